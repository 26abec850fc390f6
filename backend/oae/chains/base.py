from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class ChainParams:
    chain: str
    notify_threshold: int
    outbound_finality: int
    dust_floor: Decimal
    reorg_depth: int
    orphan_threshold: int = 1
    poll_interval: float = 30.0
    decimals: int = 8
    supports_batch: bool = False

    @property
    def safety_margin(self) -> int:
        return max(self.reorg_depth, self.notify_threshold)

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-min(self.decimals, 8))


@dataclass(frozen=True)
class Observation:
    chain: str
    txid: str
    vout: int
    address: str
    amount: Decimal
    block_height: Optional[int]
    confirmations: int

    @property
    def key(self) -> tuple:
        return (self.chain, self.txid, self.vout)


@dataclass(frozen=True)
class TxInfo:
    txid: str
    found: bool
    confirmations: int = 0
    block_height: Optional[int] = None


@dataclass(frozen=True)
class Fee:
    amount: Decimal
    rate: Optional[Decimal] = None


@dataclass
class PayoutDraft:
    chain: str
    signer_handle: str
    outputs: list[tuple[str, Decimal]]
    priority: str = "normal"
    fee: Optional[Decimal] = None
    payout_ids: list[int] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return sum((amount for _, amount in self.outputs), Decimal(0))


@dataclass(frozen=True)
class SignedTx:
    txid: str
    raw: str


class ChainAdapter(ABC):
    """What the engine needs from one chain. One implementation per chain family."""

    params: ChainParams

    @property
    def chain(self) -> str:
        return self.params.chain

    @abstractmethod
    async def get_inbound(self, address: str, since_height: Optional[int]) -> list[Observation]:
        """Outputs paying ``address`` that are unconfirmed or mined at or above ``since_height``."""

    @abstractmethod
    async def get_transaction(self, txid: str) -> TxInfo:
        ...

    @abstractmethod
    async def broadcast(self, signed: SignedTx) -> str:
        ...

    @abstractmethod
    async def estimate_fee(self, amount: Decimal, priority: str = "normal") -> Fee:
        ...

    @abstractmethod
    async def current_tip(self) -> int:
        ...

    @abstractmethod
    def validate_address(self, address: str) -> str:
        """Return the canonical form of ``address`` or raise InvalidAddress."""

    async def aclose(self) -> None:
        pass


class Signer(ABC):
    """Holds the keys; lives outside the engine's trust boundary."""

    @abstractmethod
    async def sign(self, chain: str, draft: PayoutDraft) -> SignedTx:
        ...

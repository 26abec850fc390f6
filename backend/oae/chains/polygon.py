"""Polygon USDT adapter over plain JSON-RPC.

Deposits are ERC-20 Transfer logs of the configured token; ``vout`` is the
log index inside the transaction.
"""
from decimal import Decimal
from typing import Any, Optional
import httpx

from oae.chains.addresses import validate_address
from oae.chains.base import ChainAdapter, ChainParams, Fee, Observation, SignedTx, TxInfo
from oae.chains.http import send
from oae.core.errors import AdapterRejected, AdapterUnavailable

USDT_DECIMALS = 6
TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
ERC20_TRANSFER_GAS = 65_000
# how far back the first scan of a fresh address reaches
INITIAL_LOOKBACK = 2_000
GAS_PRICE_MULTIPLIER = {"high": Decimal("1.5"), "normal": Decimal("1"), "low": Decimal("0.8")}


def _topic_for(address: str) -> str:
    return "0x" + "0" * 24 + address.lower().removeprefix("0x")


class PolygonUsdtAdapter(ChainAdapter):
    def __init__(
        self,
        params: ChainParams,
        rpc_url: str,
        contract: str,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.params = params
        self.rpc_url = rpc_url
        self.contract = contract.lower()
        self.client = client or httpx.AsyncClient(timeout=30.0)
        self.name = f"rpc:{params.chain}"
        self._id = 0

    async def _rpc(self, method: str, params: list) -> Any:
        self._id += 1
        resp = await send(
            self.client, self.name, "POST", self.rpc_url,
            json={"jsonrpc": "2.0", "method": method, "params": params, "id": self._id},
        )
        if resp.status_code != 200:
            raise AdapterUnavailable(f"{self.name}: RPC request failed")
        data = resp.json()
        if data.get("error"):
            message = data["error"].get("message", "unknown error")
            if method == "eth_sendRawTransaction":
                raise AdapterRejected(f"{self.name}: {message}")
            raise AdapterUnavailable(f"{self.name}: {message}")
        return data.get("result")

    async def current_tip(self) -> int:
        return int(await self._rpc("eth_blockNumber", []), 16)

    async def get_inbound(self, address: str, since_height: Optional[int]) -> list[Observation]:
        tip = await self.current_tip()
        from_block = since_height if since_height is not None else max(tip - INITIAL_LOOKBACK, 0)
        logs = await self._rpc("eth_getLogs", [{
            "fromBlock": hex(from_block),
            "toBlock": hex(tip),
            "address": self.contract,
            "topics": [TRANSFER_EVENT_TOPIC, None, _topic_for(address)],
        }])
        observations = []
        for log in logs or []:
            if log.get("removed"):
                continue
            height = int(log["blockNumber"], 16) if log.get("blockNumber") else None
            observations.append(Observation(
                chain=self.chain,
                txid=log["transactionHash"],
                vout=int(log["logIndex"], 16),
                address=address,
                amount=Decimal(int(log["data"], 16)) / (Decimal(10) ** USDT_DECIMALS),
                block_height=height,
                confirmations=tip - height + 1 if height is not None else 0,
            ))
        return observations

    async def get_transaction(self, txid: str) -> TxInfo:
        receipt = await self._rpc("eth_getTransactionReceipt", [txid])
        if not receipt:
            return TxInfo(txid=txid, found=False)
        if receipt.get("status") != "0x1":
            raise AdapterRejected(f"{self.name}: transaction {txid} reverted")
        height = int(receipt["blockNumber"], 16)
        tip = await self.current_tip()
        return TxInfo(txid=txid, found=True, confirmations=tip - height + 1, block_height=height)

    async def broadcast(self, signed: SignedTx) -> str:
        return await self._rpc("eth_sendRawTransaction", [signed.raw])

    async def estimate_fee(self, amount: Decimal, priority: str = "normal") -> Fee:
        # paid in the native coin, not in USDT
        gas_price = Decimal(int(await self._rpc("eth_gasPrice", []), 16))
        gas_price *= GAS_PRICE_MULTIPLIER.get(priority, Decimal("1"))
        return Fee(amount=gas_price * ERC20_TRANSFER_GAS / Decimal(10) ** 18, rate=gas_price)

    def validate_address(self, address: str) -> str:
        return validate_address(self.chain, address)

    async def aclose(self) -> None:
        await self.client.aclose()

"""Esplora REST adapter (blockstream.info, litecoinspace.org, self-hosted electrs)."""
from decimal import Decimal
from typing import Optional
import httpx

from oae.chains.addresses import validate_address
from oae.chains.base import ChainAdapter, ChainParams, Fee, Observation, SignedTx, TxInfo
from oae.chains.http import send
from oae.core.errors import AdapterRejected, AdapterUnavailable

SATS_PER_COIN = Decimal(100_000_000)
# 1-in / 2-out P2WPKH
TYPICAL_VSIZE = 141
# confirmation target (blocks) per priority
FEE_TARGETS = {"high": "1", "normal": "6", "low": "25"}
MAX_PAGES = 10
# how far back the first scan of a fresh address reaches
INITIAL_LOOKBACK = 12


class EsploraAdapter(ChainAdapter):
    def __init__(
        self,
        params: ChainParams,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        initial_lookback: int = INITIAL_LOOKBACK,
    ):
        self.params = params
        self.initial_lookback = initial_lookback
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=30.0)
        self.name = f"esplora:{params.chain}"

    async def _get(self, path: str) -> httpx.Response:
        return await send(self.client, self.name, "GET", f"{self.base_url}{path}")

    async def current_tip(self) -> int:
        resp = await self._get("/blocks/tip/height")
        if resp.status_code != 200:
            raise AdapterUnavailable(f"{self.name}: tip unavailable")
        return int(resp.text.strip())

    def _observations(self, tx: dict, address: str, tip: int) -> list[Observation]:
        status = tx.get("status") or {}
        height = status.get("block_height") if status.get("confirmed") else None
        confirmations = tip - height + 1 if height is not None else 0
        out = []
        for index, vout in enumerate(tx.get("vout", [])):
            if vout.get("scriptpubkey_address") != address:
                continue
            out.append(Observation(
                chain=self.chain,
                txid=tx["txid"],
                vout=index,
                address=address,
                amount=Decimal(vout["value"]) / SATS_PER_COIN,
                block_height=height,
                confirmations=max(confirmations, 0),
            ))
        return out

    async def get_inbound(self, address: str, since_height: Optional[int]) -> list[Observation]:
        tip = await self.current_tip()
        # a fresh address only reports its recent history
        floor = since_height if since_height is not None else max(tip - self.initial_lookback, 0)
        resp = await self._get(f"/address/{address}/txs")
        if resp.status_code != 200:
            return []
        txs = resp.json()
        observations = []
        pages = 0
        while txs:
            last_confirmed = None
            for tx in txs:
                status = tx.get("status") or {}
                height = status.get("block_height")
                if status.get("confirmed"):
                    if height < floor:
                        # newest first; everything after this is older
                        return observations
                    last_confirmed = tx["txid"]
                observations.extend(self._observations(tx, address, tip))
            pages += 1
            # Esplora pages confirmed history 25 at a time
            if last_confirmed is None or pages >= MAX_PAGES or len(txs) < 25:
                break
            resp = await self._get(f"/address/{address}/txs/chain/{last_confirmed}")
            txs = resp.json() if resp.status_code == 200 else []
        return observations

    async def get_transaction(self, txid: str) -> TxInfo:
        resp = await self._get(f"/tx/{txid}/status")
        if resp.status_code == 404:
            return TxInfo(txid=txid, found=False)
        status = resp.json()
        if not status.get("confirmed"):
            return TxInfo(txid=txid, found=True)
        tip = await self.current_tip()
        height = status["block_height"]
        return TxInfo(txid=txid, found=True, confirmations=tip - height + 1, block_height=height)

    async def broadcast(self, signed: SignedTx) -> str:
        resp = await send(self.client, self.name, "POST", f"{self.base_url}/tx", content=signed.raw)
        if resp.status_code == 404:
            raise AdapterUnavailable(f"{self.name}: broadcast endpoint missing")
        txid = resp.text.strip()
        if signed.txid and txid != signed.txid:
            raise AdapterRejected(f"{self.name}: node returned txid {txid}, expected {signed.txid}")
        return txid

    async def estimate_fee(self, amount: Decimal, priority: str = "normal") -> Fee:
        resp = await self._get("/fee-estimates")
        estimates = resp.json() if resp.status_code == 200 else {}
        rate = Decimal(str(estimates.get(FEE_TARGETS.get(priority, "6"), 1)))
        sats = (rate * TYPICAL_VSIZE).to_integral_value()
        return Fee(amount=sats / SATS_PER_COIN, rate=rate)

    def validate_address(self, address: str) -> str:
        return validate_address(self.chain, address)

    async def aclose(self) -> None:
        await self.client.aclose()

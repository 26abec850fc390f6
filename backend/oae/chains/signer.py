from typing import Optional
import httpx

from oae.chains.base import PayoutDraft, SignedTx, Signer
from oae.chains.http import send
from oae.core.errors import AdapterRejected, AdapterUnavailable


class RemoteSigner(Signer):
    """Client for an external signing service.

    The service receives the draft (outputs, fee hint, signer handle) and
    returns ``{"txid": ..., "signed_tx": ...}``. Keys never enter this process.
    """

    def __init__(self, url: str, token: str = "", client: Optional[httpx.AsyncClient] = None):
        self.url = url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=30.0)
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}

    async def sign(self, chain: str, draft: PayoutDraft) -> SignedTx:
        resp = await send(
            self.client, "signer", "POST", f"{self.url}/sign",
            headers=self.headers,
            json={
                "chain": chain,
                "signer_handle": draft.signer_handle,
                "priority": draft.priority,
                "fee": str(draft.fee) if draft.fee is not None else None,
                "outputs": [{"address": a, "amount": str(v)} for a, v in draft.outputs],
                "reference": ",".join(str(i) for i in draft.payout_ids),
            },
        )
        if resp.status_code == 404:
            raise AdapterUnavailable("signer: endpoint not found")
        data = resp.json()
        if not data.get("signed_tx") or not data.get("txid"):
            raise AdapterRejected(f"signer: {data.get('error', 'no signature returned')}")
        return SignedTx(txid=data["txid"], raw=data["signed_tx"])

    async def aclose(self) -> None:
        await self.client.aclose()

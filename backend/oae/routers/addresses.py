from typing import Optional
from fastapi import APIRouter, Depends
from oae.core.deps import get_engine, require_admin
from oae.engine import OnchainActivityEngine
from oae.schemas.address import AddAddressRequest, AddressResponse

router = APIRouter(prefix="/api/addresses", tags=["addresses"])


@router.post("", response_model=AddressResponse, status_code=201)
async def add_address(
    body: AddAddressRequest,
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    address_id = await engine.addresses.add(body.chain, body.address, body.label, by=admin)
    rows = await engine.addresses.list(body.chain, include_inactive=True)
    return next(row for row in rows if row.id == address_id)


@router.get("", response_model=list[AddressResponse])
async def list_addresses(
    chain: Optional[str] = None,
    include_inactive: bool = False,
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    return await engine.addresses.list(chain, include_inactive=include_inactive)


@router.delete("/{address_id}", status_code=204)
async def deactivate_address(
    address_id: int,
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    await engine.addresses.deactivate(address_id, by=admin)

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from oae.core.security import decode_token
from oae.config import settings
from oae.engine import OnchainActivityEngine

bearer = HTTPBearer()

def get_engine(request: Request) -> OnchainActivityEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Engine not ready")
    return engine

async def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(bearer),
) -> str:
    principal = decode_token(credentials.credentials)
    if not principal:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    return principal

async def require_admin(principal: str = Depends(get_current_principal)) -> str:
    if not settings.admin_ids:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Admin not configured")
    if principal not in settings.admin_ids:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Admin only")
    return principal

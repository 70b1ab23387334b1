from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer
from payledger.core.config import settings

security = HTTPBearer()

def create_access_token(tenant_id: str, expires_delta: timedelta | None = None) -> str:
    """Create JWT access token for a tenant."""
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)

    now = datetime.now(timezone.utc)
    expire = now + expires_delta

    payload = {
        "sub": tenant_id,
        "exp": int(expire.timestamp()),
        "iat": int(now.timestamp())
    }

    return jwt.encode(
        payload,
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM
    )

def decode_tenant_id(token: str) -> str:
    """Return the tenant id carried in a token, or raise 401."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token"
        )

    tenant_id = payload.get("sub")
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token"
        )
    return tenant_id

async def get_current_tenant(credentials = Depends(security)) -> str:
    """Get the calling tenant from the bearer token."""
    return decode_tenant_id(credentials.credentials)

async def require_admin_tenant(tenant_id: str = Depends(get_current_tenant)) -> str:
    """Only tenants listed in ADMIN_TENANT_IDS may run recovery jobs."""
    if tenant_id not in settings.ADMIN_TENANT_IDS:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return tenant_id

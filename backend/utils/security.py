import hmac
from typing import Optional

from fastapi import Header, HTTPException, status

from config import env


async def require_admin(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
    x_admin_id: Optional[str] = Header(None, alias="X-Admin-Id"),
) -> str:
    """
    Guard for operational routes. Returns the acting admin id
    (X-Admin-Id header, "admin" when absent) for audit records.
    """
    if not env.ADMIN_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Admin API key is not configured",
        )

    if not x_admin_key or not hmac.compare_digest(x_admin_key, env.ADMIN_API_KEY):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
        )

    return x_admin_id or "admin"

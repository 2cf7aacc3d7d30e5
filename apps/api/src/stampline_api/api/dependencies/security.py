from fastapi import Header, HTTPException, status

from stampline_api.core.settings import settings
from stampline_api.services.loyalty.tokens import constant_time_equals


async def require_admin_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    if not settings.admin_api_key:
        return

    if not constant_time_equals(settings.admin_api_key, x_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

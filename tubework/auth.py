import hmac
from functools import lru_cache

from fastapi import HTTPException, Security
from fastapi.security.api_key import APIKeyHeader

from .config import Settings

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


async def require_api_key(api_key: str = Security(api_key_header)):
    """Guard for routes that create or change jobs."""
    if api_key is None:
        raise HTTPException(status_code=401, detail="Missing API key")
    if not hmac.compare_digest(api_key, get_settings().api_key):
        raise HTTPException(status_code=403, detail="Invalid API key")
    return True

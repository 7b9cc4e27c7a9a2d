from typing import Optional
from fastapi import Depends, Header, HTTPException, status

from .config import Settings, settings


def get_settings() -> Settings:
    return settings


def current_user(x_user_id: Optional[int] = Header(default=None, alias="X-User-Id")) -> int:
    # Identity is asserted by the gateway in front of this service
    if x_user_id is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return x_user_id


def require_api_key(x_api_key: Optional[str] = Header(default=None, alias="X-Api-Key"),
                    cfg: Settings = Depends(get_settings)):
    if cfg.api_key and x_api_key != cfg.api_key:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return True

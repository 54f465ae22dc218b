"""Bearer token authentication."""

from subscription_service.modules.auth.jwt import (
    create_access_token,
    decode_access_token,
    get_current_user,
    require_admin,
)

__all__ = ["create_access_token", "decode_access_token", "get_current_user", "require_admin"]

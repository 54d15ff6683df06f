from .auth import AuthContext, QuotaChecker, apply_api_key_middleware, get_auth_context
from .errors import ApiError, register_error_handlers
from .memory import router as memory_router

__all__ = [
    "ApiError",
    "AuthContext",
    "QuotaChecker",
    "apply_api_key_middleware",
    "get_auth_context",
    "memory_router",
    "register_error_handlers",
]

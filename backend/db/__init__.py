from .account_store import AccountStore, ApiKeyValidation, AuthUser
from .memory_service import MemoryService, get_memory_service
from .memory_store import MEMORY_TYPES, MemoryRecord, UserStore, open_user_store

__all__ = [
    "AccountStore",
    "ApiKeyValidation",
    "AuthUser",
    "MEMORY_TYPES",
    "MemoryRecord",
    "MemoryService",
    "UserStore",
    "get_memory_service",
    "open_user_store",
]

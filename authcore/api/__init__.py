"""Router modules for the authentication service."""

from .account import router as account_router
from .auth import router as auth_router

__all__ = ["auth_router", "account_router"]

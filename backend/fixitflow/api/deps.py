"""Shared API dependencies — single import point for all routers.

Re-exports database session, authentication and entitlement dependencies so
that router modules can import everything they need from one place::

    from fixitflow.api.deps import get_db, get_current_user, get_principal
"""

from fixitflow.auth.dependencies import get_current_user, get_optional_user
from fixitflow.billing.dependencies import Principal, get_principal, require_capability
from fixitflow.database import get_db

__all__ = [
    "Principal",
    "get_current_user",
    "get_db",
    "get_optional_user",
    "get_principal",
    "require_capability",
]

# Security module
from app.security.auth import (
    Caller, create_access_token, get_current_user, require_role, require_manager
)

__all__ = [
    'Caller', 'create_access_token', 'get_current_user', 'require_role', 'require_manager'
]

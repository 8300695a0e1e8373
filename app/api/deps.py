from app.db import get_db
from app.services.auth_dependencies import require_admin_key

__all__ = [
    "get_db",
    "require_admin_key",
]

"""
FastAPI dependencies for authentication and tenant isolation
"""
from .auth import get_current_tenant_id, get_current_user_id, require_cron_secret

__all__ = ["get_current_tenant_id", "get_current_user_id", "require_cron_secret"]

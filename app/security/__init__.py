"""Security helpers for staff and internal-service authentication."""

from .auth import StaffPrincipal, require_role, require_service_key

__all__ = ["StaffPrincipal", "require_role", "require_service_key"]

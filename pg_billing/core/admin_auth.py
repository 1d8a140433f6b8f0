"""
Admin authentication for operator endpoints.

Operators authenticate with the shared X-Admin-Key header. The expected key
comes from the app's settings (app.state.settings) so tests can run several
apps with different keys side by side.
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from pg_billing.core.config import settings


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "key:<hash>"
    auth_mechanism: str = "x_admin_key"


def get_admin_key(request: Request) -> Optional[str]:
    app_settings = getattr(request.app.state, "settings", None) or settings
    return app_settings.ADMIN_KEY


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """Returns AdminActor if the X-Admin-Key header matches, None otherwise."""
    expected_key = get_admin_key(request)
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"key:{key_hash}")


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: Require admin authentication.

    Usage:
        @router.get("/v1/admin/endpoint")
        def admin_endpoint(actor: AdminActor = Depends(require_admin)):
            ...
    """
    actor = verify_admin_key(request)
    if actor:
        return actor

    if not get_admin_key(request):
        raise HTTPException(
            status_code=503,
            detail={
                "error": "Admin authentication not configured",
                "code": "admin_auth_unconfigured",
                "hint": "Set ADMIN_KEY",
            },
        )
    raise HTTPException(
        status_code=401,
        detail={
            "error": "Unauthorized: invalid or missing admin credentials",
            "code": "admin_unauthorized",
            "hint": "Send the X-Admin-Key header.",
        },
    )

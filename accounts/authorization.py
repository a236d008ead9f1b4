from typing import Optional

from errors import AccessDeniedError


def is_owner(owner_id: str, requester_id: Optional[str]) -> bool:
    return requester_id is not None and str(owner_id) == str(requester_id)


def ensure_owner(owner_id: str, requester_id: Optional[str], admin_override: bool = False,
                 resource: str = "resource") -> None:
    """The single ownership check shared by object and grant operations."""
    if admin_override or is_owner(owner_id, requester_id):
        return
    raise AccessDeniedError(
        f"Access denied: you do not own this {resource}",
        reason="not_owner",
        actor={"type": "subject", "id": requester_id or "anonymous"},
    )

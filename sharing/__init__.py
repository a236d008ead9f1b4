"""Share links: grant model, state machine and download orchestration."""

from .download import DownloadResult, DownloadService
from .models import (
    AccessContext,
    AccessMode,
    DeactivationReason,
    Grant,
    GrantPolicy,
    GrantState,
    generate_token,
)
from .service import GrantService

__all__ = [
    "AccessContext",
    "AccessMode",
    "DeactivationReason",
    "DownloadResult",
    "DownloadService",
    "Grant",
    "GrantPolicy",
    "GrantService",
    "GrantState",
    "generate_token",
]

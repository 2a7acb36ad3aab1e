"""Identity checks for the administrator and the external inference service."""
from __future__ import annotations

import logging
from typing import Optional

from .errors import Unauthorized

logger = logging.getLogger(__name__)


class AccessGuard:
    """Fail-closed checks run before any guarded operation touches state."""

    def __init__(self, admin: Optional[str], service: Optional[str]) -> None:
        self.admin = (admin or "").strip()
        self.service = (service or "").strip()

    def is_admin(self, caller: Optional[str]) -> bool:
        return bool(self.admin) and caller == self.admin

    def is_service(self, caller: Optional[str]) -> bool:
        return bool(self.service) and caller == self.service

    def require_admin(self, caller: Optional[str]) -> None:
        if not self.is_admin(caller):
            logger.warning("Rejected admin call from %r", caller)
            raise Unauthorized("Caller is not the administrator.")

    def require_service(self, caller: Optional[str]) -> None:
        if not self.is_service(caller):
            logger.warning("Rejected callback from %r", caller)
            raise Unauthorized("Caller is not the external service.")

# backend/coachline/api/dependencies/auth.py
"""
Shared-secret guards for operational endpoints.

User authentication is handled upstream; these only protect the cron
trigger and the admin surface. An unset secret leaves the endpoint open
(local development).
"""

import hmac
import logging
from typing import Optional

from fastapi import Header

from ...core.config import settings
from ...core.exceptions import UnauthorizedException

logger = logging.getLogger(__name__)


def _matches(expected: str, provided: Optional[str]) -> bool:
    return provided is not None and hmac.compare_digest(expected, provided)


def require_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    """Scheduler calls send ``Authorization: Bearer <cron_secret>``."""
    expected = settings.cron_secret.get_secret_value()
    if not expected:
        return
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:]
    if not _matches(expected, token):
        logger.warning("Rejected cron call with invalid credentials")
        raise UnauthorizedException("Unauthorized", code="UNAUTHORIZED")


def require_admin_key(x_admin_key: Optional[str] = Header(default=None)) -> None:
    expected = settings.admin_api_key.get_secret_value()
    if not expected:
        return
    if not _matches(expected, x_admin_key):
        logger.warning("Rejected admin call with invalid credentials")
        raise UnauthorizedException("Unauthorized", code="UNAUTHORIZED")

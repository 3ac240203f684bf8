# backend/coachline/routes/_errors.py
"""Shared error translation for route handlers."""

from typing import NoReturn

from ..core.exceptions import DomainException

ULID_PATH_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    raise exc.to_http_exception()

"""Admin-only authorization helpers."""
from __future__ import annotations

import logging

from fastapi import Depends, status

from portier.core.errors import AuthError
from portier.core.logging_config import SECURITY_LOGGER_NAME
from portier.core.session import get_current_account
from portier.domain.accounts.models import Account

security_logger = logging.getLogger(SECURITY_LOGGER_NAME)

ADMIN_ROLE = "admin"


def require_admin(account: Account = Depends(get_current_account)) -> Account:
    """Ensure the signed-in account has the admin role."""
    if account.role != ADMIN_ROLE:
        security_logger.warning("Account %s tried to reach an admin endpoint", account.id)
        raise AuthError("Forbidden", error_code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)
    return account


__all__ = ["require_admin"]

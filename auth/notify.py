"""
auth/notify.py -- Outbound notification seam for password reset links.

Delivery (SMTP, queue, provider API) is outside this package. The reset
coordinator hands the link to whatever NotificationSender it was built with;
LoggingNotificationSender is the default and only writes a log line with the
address redacted, which is enough for local development.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("trustauth.auth.notify")


class NotificationSender(Protocol):
    def send_password_reset(self, email: str, token: str, reset_url: str) -> None: ...


def redact_email(email: str) -> str:
    """Keep the first two characters of the local part and the domain."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class LoggingNotificationSender:
    """Dev-mode sender. Never logs the token itself."""

    def send_password_reset(self, email: str, token: str, reset_url: str) -> None:
        base = reset_url[: -len(token)] if token and reset_url.endswith(token) else reset_url
        logger.info("Password reset link issued for %s (%s<token>)", redact_email(email), base)

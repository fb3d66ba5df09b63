from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from serverpanel.logging import get_logger
from serverpanel.service.email import EmailService

logger = get_logger(__name__)


@dataclass(frozen=True)
class Notification:
    address: str
    template_key: str
    variables: Dict[str, Any] = field(default_factory=dict)


class Outbox:
    """Notifications collected during one request, sent after it completes."""

    def __init__(self) -> None:
        self._pending: List[Notification] = []

    def queue(
        self, address: str, template_key: str, variables: Optional[Dict[str, Any]] = None
    ) -> None:
        self._pending.append(Notification(address, template_key, dict(variables or {})))

    @property
    def pending(self) -> List[Notification]:
        return list(self._pending)

    def __len__(self) -> int:
        return len(self._pending)

    def take(self) -> List[Notification]:
        pending, self._pending = self._pending, []
        return pending


class NotificationDispatcher:
    def __init__(self, email: EmailService) -> None:
        self.email = email

    def drain(self, outbox: Outbox) -> int:
        """Send every queued notification and return how many were delivered.

        A failed send is logged and never raised; the state change that queued
        it has already been committed.
        """
        delivered = 0
        for item in outbox.take():
            try:
                sent = self.email.send_email(item.address, item.template_key, item.variables)
            except Exception as exc:
                logger.error(
                    "email_send_failed",
                    template=item.template_key,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            if sent:
                delivered += 1
            else:
                logger.warning("email_not_delivered", template=item.template_key)
        return delivered

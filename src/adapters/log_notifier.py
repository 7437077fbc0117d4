"""Log-only notification adapter.

Writes the email to the log instead of delivering it. Useful for dry runs
and local development; addresses containing ``fail@`` fail on purpose so the
FAILED path can be exercised end to end.
"""

from __future__ import annotations

import logging
import uuid
from collections import deque
from typing import Optional

LOGGER = logging.getLogger(__name__)

SIMULATED_FAILURE_MARKER = "fail@"
RECENT_MESSAGES = 100


class LogOnlyNotifier:
    """Notifier adapter that logs emails instead of sending them."""

    def __init__(self, from_address: str) -> None:
        self._from_address = from_address
        # (to, subject) of the most recent deliveries only.
        self.sent: deque[tuple[str, str]] = deque(maxlen=RECENT_MESSAGES)

    async def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> str:
        if SIMULATED_FAILURE_MARKER in to:
            raise RuntimeError("Simulated email failure for testing")

        message_id = f"<{uuid.uuid4().hex}@log-only>"
        LOGGER.info(
            "EMAIL (not delivered)\nFrom: %s\nTo: %s\nSubject: %s\n\n%s",
            self._from_address,
            to,
            subject,
            text,
        )
        self.sent.append((to, subject))
        return message_id

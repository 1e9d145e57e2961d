"""
Transport hooks invoked after stream state commits.

Fire-and-forget: the coordinator logs hook failures and never rolls back.
"""

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class Notifier:
    """Outbound notifications towards providers and clients.

    The default implementation does nothing. A transport layer subclasses it
    to push events over its own channel.
    """

    def notify_provider(
        self, provider_id: str, event: str, payload: Optional[Dict[str, Any]] = None
    ) -> None:
        pass

    def notify_client(self, stream_id: str, payload: Dict[str, Any]) -> None:
        pass


class LoggingNotifier(Notifier):
    """Notifier that only writes events to the log."""

    def notify_provider(
        self, provider_id: str, event: str, payload: Optional[Dict[str, Any]] = None
    ) -> None:
        logger.debug("provider %s <- %s %s", provider_id, event, payload or {})

    def notify_client(self, stream_id: str, payload: Dict[str, Any]) -> None:
        logger.debug("stream %s <- %s", stream_id, payload)

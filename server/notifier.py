"""
Outcome notifications (outbid, won, ended, starting_soon).

Delivery is best-effort: notify() never raises, and engines only call it after
their transaction has committed.
"""
import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import requests

from . import config

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    OUTBID = "outbid"
    WON = "won"
    ENDED = "ended"
    STARTING_SOON = "starting_soon"


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class Notifier:
    """Base notifier: subclasses implement _deliver()."""

    def notify(self, user_id: str, event_type: EventType, payload: Dict[str, Any]):
        try:
            self._deliver(user_id, EventType(event_type), {k: _jsonable(v) for k, v in payload.items()})
        except Exception as e:
            logger.warning(f"Failed to deliver {event_type} notification to {user_id}: {e}")

    def notify_many(self, user_ids: Iterable[str], event_type: EventType, payload: Dict[str, Any]):
        for user_id in sorted(set(user_ids)):
            self.notify(user_id, event_type, payload)

    def _deliver(self, user_id: str, event_type: EventType, payload: Dict[str, Any]):
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Writes events to the log; default when no webhook is configured."""

    def _deliver(self, user_id: str, event_type: EventType, payload: Dict[str, Any]):
        logger.info(f"Notify {user_id}: {event_type.value} {payload}")


class WebhookNotifier(Notifier):
    """POSTs each event as JSON to a webhook endpoint."""

    def __init__(self, url: str, timeout: float = 3.0):
        self.url = url
        self.timeout = timeout
        self.session = requests.Session()

    def _deliver(self, user_id: str, event_type: EventType, payload: Dict[str, Any]):
        response = self.session.post(
            self.url,
            json={"user_id": user_id, "event_type": event_type.value, "payload": payload},
            timeout=self.timeout
        )
        response.raise_for_status()


class FanoutNotifier(Notifier):
    """Delivers to several notifiers; one failing sink does not stop the others."""

    def __init__(self, sinks: List[Notifier]):
        self.sinks = sinks

    def _deliver(self, user_id: str, event_type: EventType, payload: Dict[str, Any]):
        for sink in self.sinks:
            sink.notify(user_id, event_type, payload)


def build_notifier(webhook_url: Optional[str] = None) -> Notifier:
    """Notifier from configuration: log sink, plus the webhook when NOTIFY_WEBHOOK_URL is set."""
    url = webhook_url if webhook_url is not None else config.NOTIFY_WEBHOOK_URL
    if url:
        return FanoutNotifier([LoggingNotifier(), WebhookNotifier(url, timeout=config.NOTIFY_TIMEOUT_SECONDS)])
    return LoggingNotifier()

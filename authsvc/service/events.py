from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, Protocol

from redis import Redis

from authsvc.logging import get_logger

logger = get_logger(__name__)

USER_CREATED = "user.created"
PASSWORD_RESET_REQUESTED = "password_reset.requested"
EMAIL_VERIFICATION_REQUESTED = "email_verification.requested"


class EventPublisher(Protocol):
    def publish(self, event_type: str, payload: Dict[str, Any]) -> None: ...


def _envelope(event_type: str, payload: Dict[str, Any]) -> str:
    return json.dumps(
        {
            **payload,
            "eventType": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        default=str,
    )


class LoggingEventPublisher:
    """Writes event types to the log stream; used when no broker is configured.

    Payloads are not kept or logged since they can carry one-time tokens.
    """

    def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        logger.info("event_published", event_type=event_type, user_id=payload.get("userId"))


class RedisEventPublisher:
    """Publishes JSON events on a Redis pub/sub channel."""

    def __init__(self, redis_url: str, channel: str, *, socket_timeout: float = 5.0) -> None:
        self.channel = channel
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        receivers = self.client.publish(self.channel, _envelope(event_type, payload))
        logger.info("event_published", event_type=event_type, channel=self.channel, receivers=receivers)

    def close(self) -> None:
        self.client.close()


async def publish_safely(
    publisher: EventPublisher, event_type: str, payload: Dict[str, Any]
) -> bool:
    """Publish without letting a side-channel failure reach the caller."""
    try:
        await asyncio.to_thread(publisher.publish, event_type, payload)
    except Exception as exc:
        logger.warning(
            "event_publish_failed",
            event_type=event_type,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False
    return True

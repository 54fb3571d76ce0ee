"""Mailbox towards the status manager.

The status manager aggregates per-node reports into policy status on its own
schedule. The reconcilers never wait for it: they push a message naming the
affected policy key and move on.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from redis import Redis
from redis.exceptions import RedisError

from varmor.core import metrics
from varmor.core.logging import get_logger

logger = get_logger(__name__)


class StatusMessage(str, Enum):
    # Drop cached policy/modeling status for a deleted policy
    DELETE = "Delete"
    # Drop cached status before a profile is rebuilt
    RESET = "Reset"
    # Recompute and report status without touching the profile
    UPDATE_STATUS = "UpdateStatus"
    # The desired number of loaded profiles must be recounted
    UPDATE_DESIRED_NUMBER = "UpdateDesiredNumber"


class StatusMailbox:
    """Fire-and-forget channel to the status manager."""

    def send(self, kind: StatusMessage, key: str = "") -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        self.send(StatusMessage.DELETE, key)

    def reset(self, key: str) -> None:
        self.send(StatusMessage.RESET, key)

    def update_status(self, key: str) -> None:
        self.send(StatusMessage.UPDATE_STATUS, key)

    def update_desired_number(self) -> None:
        self.send(StatusMessage.UPDATE_DESIRED_NUMBER)


class RedisStatusMailbox(StatusMailbox):
    """Status mailbox on a Redis list, mirrored on a pub/sub channel."""

    def __init__(self, redis_client: Redis, queue_key: str, channel: Optional[str] = None):
        self.redis = redis_client
        self.queue_key = queue_key
        self.channel = channel

    def send(self, kind: StatusMessage, key: str = "") -> None:
        message = json.dumps(
            {
                "kind": kind.value,
                "key": key,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )

        try:
            pipeline = self.redis.pipeline()
            pipeline.rpush(self.queue_key, message)
            if self.channel:
                pipeline.publish(self.channel, message)
            pipeline.execute()
        except RedisError as e:
            # The status manager resyncs periodically; a lost message only delays it
            logger.error(f"Failed to send {kind.value} for {key or '*'}: {e}")
            return

        metrics.status_messages.labels(kind=kind.value).inc()
        logger.debug(f"Sent {kind.value} for {key or '*'} to the status manager")

    def receive(self, timeout: int = 0) -> Optional[Dict[str, Any]]:
        """Pop the oldest message, waiting up to ``timeout`` seconds (0 = no wait)."""
        if timeout:
            item = self.redis.blpop([self.queue_key], timeout=timeout)
            raw = item[1] if item else None
        else:
            raw = self.redis.lpop(self.queue_key)

        if raw is None:
            return None

        data = json.loads(raw)
        data["kind"] = StatusMessage(data["kind"])
        return data

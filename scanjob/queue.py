"""
NATS JetStream job queue

Jobs are read through a durable pull consumer one message at a time;
progress and results are published back to the result subject of the same
stream. A message handed to the worker exposes ``data``, ``in_progress()``
(extend the ack deadline) and ``ack()``, which nats-py's ``Msg`` provides.
"""

import asyncio
import logging
from typing import Optional

import nats
from nats.errors import Error as NatsError
from nats.errors import TimeoutError as NatsTimeoutError
from nats.js.api import AckPolicy, ConsumerConfig, DeliverPolicy, StreamConfig
from nats.js.errors import NotFoundError

from .config import WorkerConfig
from .errors import QueuePublishError

logger = logging.getLogger(__name__)

STREAM_DESCRIPTION = 'task job queue'
STREAM_MAX_MSGS = 100
ACK_WAIT_SECONDS = 30 * 60
INACTIVE_THRESHOLD_SECONDS = 60 * 60


def consumer_config(config: WorkerConfig) -> ConsumerConfig:
    """Durable pull consumer settings: explicit acks, 30 minute lease"""
    return ConsumerConfig(
        durable_name=config.consumer_name,
        num_replicas=1,
        ack_policy=AckPolicy.EXPLICIT,
        deliver_policy=DeliverPolicy.ALL,
        max_ack_pending=-1,
        ack_wait=ACK_WAIT_SECONDS,
        inactive_threshold=INACTIVE_THRESHOLD_SECONDS,
        filter_subject=config.topic_name,
    )


class JobQueue:
    """Thin wrapper over a JetStream context"""

    def __init__(self, config: WorkerConfig):
        self.config = config
        self._nc = None
        self._js = None
        self._sub = None

    async def connect(self) -> None:
        logger.info("Connecting to %s", self.config.nats_url)
        self._nc = await nats.connect(self.config.nats_url)
        self._js = self._nc.jetstream()

    async def ensure_stream(self) -> None:
        """Create the stream carrying job and result subjects if it does not exist"""
        subjects = [self.config.topic_name, self.config.result_topic_name]
        try:
            await self._js.stream_info(self.config.stream_name)
            return
        except NotFoundError:
            pass
        logger.info("Creating stream %s for %s", self.config.stream_name, subjects)
        await self._js.add_stream(StreamConfig(
            name=self.config.stream_name,
            description=STREAM_DESCRIPTION,
            subjects=subjects,
            max_msgs=STREAM_MAX_MSGS,
        ))

    async def subscribe(self) -> None:
        self._sub = await self._js.pull_subscribe(
            self.config.topic_name,
            durable=self.config.consumer_name,
            stream=self.config.stream_name,
            config=consumer_config(self.config),
        )

    async def fetch_one(self, timeout: Optional[float] = None):
        """
        Wait for the next job message

        Args:
            timeout: Seconds to wait (default: config.fetch_timeout)

        Returns:
            The message, or None if none arrived in time
        """
        try:
            messages = await self._sub.fetch(batch=1, timeout=timeout or self.config.fetch_timeout)
        except (NatsTimeoutError, asyncio.TimeoutError):
            return None
        return messages[0] if messages else None

    async def publish(self, subject: str, payload: bytes, msg_id: str) -> None:
        """
        Publish a message with a de-duplication id

        Raises:
            QueuePublishError: If the server does not acknowledge the publish
        """
        try:
            await self._js.publish(subject, payload, headers={'Nats-Msg-Id': msg_id})
        except (NatsError, asyncio.TimeoutError) as e:
            raise QueuePublishError(f"failed to publish {msg_id} to {subject}: {e}") from e

    async def close(self) -> None:
        """Stop consuming and drain the connection"""
        if self._sub is not None:
            try:
                await self._sub.unsubscribe()
            except NatsError as e:
                logger.warning("Failed to unsubscribe: %s", e)
            self._sub = None
        if self._nc is not None and not self._nc.is_closed:
            await self._nc.drain()
        self._nc = None
        self._js = None

"""Tests for the JetStream job queue wrapper"""

import pytest
from nats.errors import TimeoutError as NatsTimeoutError
from nats.js.api import AckPolicy, DeliverPolicy
from nats.js.errors import NotFoundError

from scanjob.errors import QueuePublishError
from scanjob.queue import ACK_WAIT_SECONDS, JobQueue, consumer_config


class StubJetStream:
    def __init__(self, stream_exists=True, publish_error=None):
        self.stream_exists = stream_exists
        self.publish_error = publish_error
        self.added = []
        self.published = []

    async def stream_info(self, name):
        if not self.stream_exists:
            raise NotFoundError()
        return {'name': name}

    async def add_stream(self, config):
        self.added.append(config)

    async def publish(self, subject, payload, headers=None):
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append((subject, payload, headers))


class StubSubscription:
    def __init__(self, messages=None):
        self.messages = messages

    async def fetch(self, batch=1, timeout=None):
        if self.messages is None:
            raise NatsTimeoutError()
        return self.messages


def make_queue(worker_config, js):
    queue = JobQueue(worker_config)
    queue._js = js
    return queue


def test_consumer_config(worker_config):
    config = consumer_config(worker_config)
    assert config.durable_name == 'grype-worker'
    assert config.ack_policy == AckPolicy.EXPLICIT
    assert config.deliver_policy == DeliverPolicy.ALL
    assert config.max_ack_pending == -1
    assert config.ack_wait == ACK_WAIT_SECONDS == 1800
    assert config.filter_subject == 'tasks.grype'


@pytest.mark.asyncio
async def test_ensure_stream_creates_missing_stream(worker_config):
    js = StubJetStream(stream_exists=False)
    await make_queue(worker_config, js).ensure_stream()
    (stream,) = js.added
    assert stream.name == 'tasks'
    assert stream.subjects == ['tasks.grype', 'tasks.grype.results']


@pytest.mark.asyncio
async def test_ensure_stream_keeps_existing_stream(worker_config):
    js = StubJetStream(stream_exists=True)
    await make_queue(worker_config, js).ensure_stream()
    assert js.added == []


@pytest.mark.asyncio
async def test_publish_sets_msg_id(worker_config):
    js = StubJetStream()
    await make_queue(worker_config, js).publish('tasks.grype.results', b'{}', 'task-run-result-1')
    assert js.published == [('tasks.grype.results', b'{}', {'Nats-Msg-Id': 'task-run-result-1'})]


@pytest.mark.asyncio
async def test_publish_error(worker_config):
    js = StubJetStream(publish_error=NatsTimeoutError())
    with pytest.raises(QueuePublishError, match='task-run-result-1'):
        await make_queue(worker_config, js).publish('tasks.grype.results', b'{}', 'task-run-result-1')


@pytest.mark.asyncio
async def test_fetch_one(worker_config):
    queue = make_queue(worker_config, StubJetStream())
    queue._sub = StubSubscription(messages=['msg'])
    assert await queue.fetch_one() == 'msg'
    queue._sub = StubSubscription(messages=None)
    assert await queue.fetch_one() is None

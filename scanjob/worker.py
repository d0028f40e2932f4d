"""
Scan job worker

Consumes one job at a time. For each job the worker:

1. extends the message lease and publishes an ``in-progress`` response,
2. keeps extending the lease on an interval while the job runs,
3. resolves credentials, pulls the artifact, writes a docker-archive into a
   fresh working directory and scans it (in a thread, so the heartbeat
   keeps running),
4. publishes exactly one ``finished`` or ``failed`` response,
5. acknowledges the message, whatever the outcome.

Failed jobs are not redelivered by this worker; retrying is left to whoever
operates the queue.
"""

import asyncio
import logging
import os
import shutil
import tempfile
from contextlib import suppress
from typing import Callable, Mapping, Optional

from .archive import ArchiveBuilder
from .auth import DEFAULT_REGISTRY_KIND, CredentialResolver, RegistryKind, default_resolvers, resolve
from .config import WorkerConfig
from .errors import InvalidJobMessage, MissingParameter, QueuePublishError
from .messages import TaskRequest, TaskResponse, TaskRunStatus, in_progress_msg_id, result_msg_id
from .puller import OCIPuller
from .queue import JobQueue
from .scanner import GrypeScanner, ScannerPort

logger = logging.getLogger(__name__)

ARCHIVE_NAME = 'image.tar'
MISSING_URL_MESSAGE = 'OCI artifact url parameter is not provided'


class Heartbeat:
    """
    Periodically extends a message's processing lease

    Runs as an asyncio task from ``start()`` until ``stop()``; a failed
    renewal is logged and the next one is still attempted.
    """

    def __init__(self, msg, interval: float):
        self.msg = msg
        self.interval = interval
        self.renewals = 0
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.msg.in_progress()
                self.renewals += 1
            except Exception as e:
                logger.error("Failed to send an in progress message: %s", e)

    async def __aenter__(self) -> 'Heartbeat':
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


class Worker:
    """Runs scan jobs pulled from the job queue"""

    def __init__(self, config: WorkerConfig, queue, scanner: Optional[ScannerPort] = None,
                 puller: Optional[OCIPuller] = None,
                 resolvers: Optional[Mapping[RegistryKind, CredentialResolver]] = None,
                 builder_factory: Callable[..., ArchiveBuilder] = ArchiveBuilder):
        """
        Initialize worker

        Args:
            config: Worker configuration
            queue: JobQueue (or an object with the same coroutine methods)
            scanner: Scanner (default: GrypeScanner from config)
            puller: OCI puller (default: OCIPuller())
            resolvers: Credential resolver per registry kind (default: production resolvers)
            builder_factory: Callable building an ArchiveBuilder for a working directory
        """
        self.config = config
        self.queue = queue
        self.scanner = scanner or GrypeScanner(config.scanner_binary, config.scanner_format)
        self.puller = puller or OCIPuller()
        self.resolvers = resolvers or default_resolvers()
        self.builder_factory = builder_factory

    @classmethod
    def from_config(cls, config: WorkerConfig) -> 'Worker':
        return cls(config, JobQueue(config))

    async def run(self, stop_event: asyncio.Event) -> None:
        """
        Consume jobs until ``stop_event`` is set

        A job in flight when the event is set runs to completion before the
        consumer is drained.
        """
        await self.queue.connect()
        try:
            await self.queue.ensure_stream()
            await self.queue.subscribe()
            logger.info("Consuming %s as %s", self.config.topic_name, self.config.consumer_name)

            while not stop_event.is_set():
                msg = await self.queue.fetch_one()
                if msg is None:
                    continue
                await self.handle(msg)
        finally:
            logger.info("Stopping consumer")
            await self.queue.close()

    async def handle(self, msg) -> Optional[TaskResponse]:
        """
        Process one message: heartbeat around the job, then ack exactly once

        Returns:
            The terminal response, or None if the message could not be decoded
        """
        logger.info("Received a new job")
        try:
            await msg.in_progress()
        except Exception as e:
            logger.error("Failed to send the initial in progress message: %s", e)

        heartbeat = Heartbeat(msg, self.config.heartbeat_interval)
        heartbeat.start()
        try:
            response = await self.process(msg)
        finally:
            await heartbeat.stop()

        try:
            await msg.ack()
        except Exception as e:
            logger.error("Failed to send the ack message: %s", e)

        logger.info("Processing a job completed")
        return response

    async def process(self, msg) -> Optional[TaskResponse]:
        try:
            request = TaskRequest.from_json(msg.data)
        except InvalidJobMessage as e:
            logger.error("Dropping undecodable job message: %s", e)
            return None

        response = TaskResponse(run_id=request.run_id)
        response.transition(TaskRunStatus.IN_PROGRESS)
        await self._publish(response, in_progress_msg_id(request.run_id))

        try:
            output = await asyncio.to_thread(self.run_pipeline, request)
        except Exception as e:
            logger.error("Run %d failed: %s", request.run_id, e)
            response.fail(str(e))
            # Scanner errors carry the captured output for diagnostics
            response.result = getattr(e, 'output', b'') or b''
        else:
            response.finish(output)
            logger.info("Run %d finished", request.run_id)

        await self._publish(response, result_msg_id(request.run_id))
        return response

    def run_pipeline(self, request: TaskRequest) -> bytes:
        """
        Resolve, pull, archive and scan; blocking

        Args:
            request: The job

        Returns:
            Raw scanner output

        Raises:
            ScanJobError: From whichever stage fails first
        """
        params = request.params
        artifact_url = params.get('oci_artifact_url')
        if not artifact_url:
            raise MissingParameter(MISSING_URL_MESSAGE)
        registry_type = params.get('registry_type') or DEFAULT_REGISTRY_KIND.value

        logger.info("Fetching image %s from %s registry (run %d)", artifact_url, registry_type, request.run_id)
        credentials = resolve(registry_type, params, self.resolvers)

        os.makedirs(self.config.workdir, exist_ok=True)
        workdir = tempfile.mkdtemp(prefix=f"run-{request.run_id}-", dir=self.config.workdir)
        try:
            with self.puller.pull(artifact_url, credentials) as pulled:
                builder = self.builder_factory(
                    workdir,
                    keep_oci_manifest=self.config.keep_oci_manifest,
                    cleanup=self.config.cleanup_intermediate,
                )
                bundle = builder.build(
                    pulled.manifest,
                    pulled.store,
                    str(pulled.reference),
                    os.path.join(workdir, ARCHIVE_NAME),
                )

            logger.info("Scanning image %s (run %d)", bundle.path, request.run_id)
            return self.scanner.scan(bundle.path).raw_output
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    async def _publish(self, response: TaskResponse, msg_id: str) -> None:
        try:
            await self.queue.publish(self.config.result_topic_name, response.to_json(), msg_id)
        except QueuePublishError as e:
            logger.error("Failed to publish job %s: %s", response.status.value, e)

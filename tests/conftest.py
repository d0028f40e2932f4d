"""Shared test fixtures for the scan job worker."""

import asyncio
import json
import tarfile
import time
from typing import Dict, List, Optional, Tuple

import pytest

from scanjob.config import WorkerConfig
from scanjob.content import OCI_CONFIG, OCI_LAYER_GZIP, OCI_MANIFEST, ContentDescriptor, compute_digest
from scanjob.errors import QueuePublishError, RegistryFetchError, ScanExecutionError
from scanjob.scanner import ScannerPort, parse_grype_output

GRYPE_OUTPUT = json.dumps({
    'matches': [
        {
            'vulnerability': {
                'id': 'CVE-2023-0001',
                'severity': 'High',
                'dataSource': 'https://nvd.nist.gov/vuln/detail/CVE-2023-0001',
                'namespace': 'alpine:distro:alpine:3.18',
                'urls': ['https://example.com/CVE-2023-0001'],
                'fix': {'versions': ['1.2.4'], 'state': 'fixed'},
            },
            'artifact': {'name': 'openssl', 'version': '1.2.3', 'type': 'apk'},
        },
        {
            'vulnerability': {
                'id': 'CVE-2023-0002',
                'severity': 'Low',
                'fix': {'versions': [], 'state': 'not-fixed'},
            },
            'artifact': {'name': 'busybox', 'version': '1.36.1', 'type': 'apk'},
        },
    ],
    'source': {'type': 'image'},
}).encode('utf-8')


def blob(data: bytes, media_type: str) -> ContentDescriptor:
    return ContentDescriptor(media_type=media_type, digest=compute_digest(data), size=len(data))


class FakeImage:
    """An image manifest with its config and layer blobs"""

    def __init__(self, layer_count: int = 2, config_media_type: str = OCI_CONFIG,
                 layer_media_type: str = OCI_LAYER_GZIP, manifest_media_type: str = OCI_MANIFEST,
                 name: str = 'app', architecture: str = 'amd64'):
        # Content is derived from the name so distinct images never share blobs
        self.config_data = json.dumps({
            'architecture': architecture,
            'os': 'linux',
            'config': {'Labels': {'name': name}},
        }).encode('utf-8')
        self.config = blob(self.config_data, config_media_type)
        self.layer_data = [f"{name}-layer-{i}-contents".encode('utf-8') for i in range(1, layer_count + 1)]
        self.layers = [blob(data, layer_media_type) for data in self.layer_data]
        self.manifest_bytes = json.dumps({
            'schemaVersion': 2,
            'mediaType': manifest_media_type,
            'config': self.config.to_dict(),
            'layers': [layer.to_dict() for layer in self.layers],
        }).encode('utf-8')
        self.manifest = blob(self.manifest_bytes, manifest_media_type)

    @property
    def blobs(self) -> Dict[str, bytes]:
        blobs = {self.config.digest: self.config_data}
        for layer, data in zip(self.layers, self.layer_data):
            blobs[layer.digest] = data
        return blobs


class FakeRegistry:
    """Serves manifests and blobs to the puller in place of a RegistryClient"""

    def __init__(self):
        self.manifests: Dict[str, Tuple[ContentDescriptor, bytes]] = {}
        self.blobs: Dict[str, bytes] = {}
        self.blob_requests: List[str] = []
        self.hosts: List[str] = []

    def add_image(self, reference: str, image: FakeImage) -> None:
        self.manifests[reference] = (image.manifest, image.manifest_bytes)
        self.manifests[image.manifest.digest] = (image.manifest, image.manifest_bytes)
        self.blobs.update(image.blobs)

    def client_factory(self, registry, credential_lookup):
        self.hosts.append(registry)
        return FakeRegistryClient(self, registry, credential_lookup)


class FakeRegistryClient:
    def __init__(self, registry: FakeRegistry, host: str, credential_lookup):
        self.registry = registry
        self.host = host
        self.credential_lookup = credential_lookup

    def get_manifest(self, repository, reference):
        self.credential_lookup(self.host)
        try:
            return self.registry.manifests[reference]
        except KeyError:
            raise RegistryFetchError(f"GET manifest {reference} failed: 404", status_code=404) from None

    def get_blob(self, repository, descriptor):
        self.registry.blob_requests.append(descriptor.digest)
        try:
            return self.registry.blobs[descriptor.digest]
        except KeyError:
            raise RegistryFetchError(f"GET blob {descriptor.digest} failed: 404", status_code=404) from None


class FakeScanner(ScannerPort):
    """Returns canned grype output and records what it was asked to scan"""

    def __init__(self, output: bytes = GRYPE_OUTPUT, delay: float = 0.0,
                 error: Optional[Exception] = None):
        self.output = output
        self.delay = delay
        self.error = error
        self.scanned: List[str] = []
        self.members: List[List[str]] = []
        self.docker_manifests: List[list] = []

    def scan(self, archive_path):
        self.scanned.append(str(archive_path))
        with tarfile.open(archive_path, 'r') as tar:
            self.members.append(tar.getnames())
            self.docker_manifests.append(json.load(tar.extractfile('manifest.json')))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return parse_grype_output(self.output)


class FakeMessage:
    """A queue message recording lease renewals and acks"""

    def __init__(self, data: bytes, fail_in_progress: bool = False):
        self.data = data
        self.fail_in_progress = fail_in_progress
        self.in_progress_calls = 0
        self.ack_calls = 0
        self.events: List[str] = []

    async def in_progress(self):
        self.in_progress_calls += 1
        self.events.append('in_progress')
        if self.fail_in_progress:
            raise ConnectionError('lease renewal refused')

    async def ack(self):
        self.ack_calls += 1
        self.events.append('ack')


class FakeQueue:
    """In-memory stand-in for JobQueue"""

    def __init__(self, messages=None, fail_publish: bool = False, stop_event: Optional[asyncio.Event] = None):
        self.messages = list(messages or [])
        self.fail_publish = fail_publish
        self.stop_event = stop_event
        self.published: List[Tuple[str, dict, str]] = []
        self.connected = False
        self.closed = False
        self.subscribed = False

    async def connect(self):
        self.connected = True

    async def ensure_stream(self):
        pass

    async def subscribe(self):
        self.subscribed = True

    async def fetch_one(self, timeout=None):
        if self.messages:
            return self.messages.pop(0)
        if self.stop_event is not None:
            self.stop_event.set()
        await asyncio.sleep(0)
        return None

    async def publish(self, subject, payload, msg_id):
        if self.fail_publish:
            raise QueuePublishError(f"failed to publish {msg_id}")
        self.published.append((subject, json.loads(payload), msg_id))

    async def close(self):
        self.closed = True


def job_message(run_id: int, **params) -> FakeMessage:
    return FakeMessage(json.dumps({'runID': run_id, 'params': params}).encode('utf-8'))


@pytest.fixture
def image() -> FakeImage:
    return FakeImage(layer_count=2)


@pytest.fixture
def fake_registry(image) -> FakeRegistry:
    registry = FakeRegistry()
    registry.add_image('v1.0', image)
    return registry


@pytest.fixture
def worker_config(tmp_path) -> WorkerConfig:
    return WorkerConfig(
        nats_url='nats://localhost:4222',
        stream_name='tasks',
        topic_name='tasks.grype',
        result_topic_name='tasks.grype.results',
        consumer_name='grype-worker',
        heartbeat_interval=15.0,
        workdir_root=str(tmp_path / 'work'),
    )


@pytest.fixture
def scan_failure() -> ScanExecutionError:
    return ScanExecutionError('error running grype: exit status 1', output=b'db update failed', returncode=1)

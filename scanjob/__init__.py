"""
Scan Job Worker - OCI artifact vulnerability scanning

Pulls one OCI artifact from GHCR, ECR or ACR, writes it as a docker-archive
and runs an offline vulnerability scanner over it, driven by jobs from a
NATS JetStream queue.
"""

from .archive import ArchiveBuilder, ArchiveBundle
from .auth import RegistryCredential, RegistryKind, RegistryParams, resolve
from .config import WorkerConfig
from .content import ContentDescriptor, Manifest, MemoryStore
from .messages import TaskRequest, TaskResponse, TaskRunStatus
from .puller import OCIPuller, PullResult
from .reference import ArtifactReference
from .scanner import GrypeScanner, ScannerPort, ScanResult
from .worker import Heartbeat, Worker

__all__ = [
    'ArchiveBuilder',
    'ArchiveBundle',
    'ArtifactReference',
    'ContentDescriptor',
    'GrypeScanner',
    'Heartbeat',
    'Manifest',
    'MemoryStore',
    'OCIPuller',
    'PullResult',
    'RegistryCredential',
    'RegistryKind',
    'RegistryParams',
    'ScanResult',
    'ScannerPort',
    'TaskRequest',
    'TaskResponse',
    'TaskRunStatus',
    'Worker',
    'WorkerConfig',
    'resolve',
]

__version__ = '0.1.0'

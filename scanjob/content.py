"""
Content descriptors, manifests and the per-job content store
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Tuple

from .errors import BlobFetchError, ManifestDecodeError, RegistryFetchError, UnsupportedMediaType

# OCI image-spec media types
OCI_MANIFEST = 'application/vnd.oci.image.manifest.v1+json'
OCI_INDEX = 'application/vnd.oci.image.index.v1+json'
OCI_CONFIG = 'application/vnd.oci.image.config.v1+json'
OCI_EMPTY = 'application/vnd.oci.empty.v1+json'
OCI_LAYER = 'application/vnd.oci.image.layer.v1.tar'
OCI_LAYER_GZIP = 'application/vnd.oci.image.layer.v1.tar+gzip'
OCI_LAYER_ZSTD = 'application/vnd.oci.image.layer.v1.tar+zstd'
OCI_LAYER_NONDIST = 'application/vnd.oci.image.layer.nondistributable.v1.tar'
OCI_LAYER_NONDIST_GZIP = 'application/vnd.oci.image.layer.nondistributable.v1.tar+gzip'
OCI_LAYER_NONDIST_ZSTD = 'application/vnd.oci.image.layer.nondistributable.v1.tar+zstd'

# Docker distribution media types
DOCKER_MANIFEST = 'application/vnd.docker.distribution.manifest.v2+json'
DOCKER_MANIFEST_LIST = 'application/vnd.docker.distribution.manifest.list.v2+json'
DOCKER_CONFIG = 'application/vnd.docker.container.image.v1+json'
DOCKER_LAYER = 'application/vnd.docker.image.rootfs.diff.tar'
DOCKER_LAYER_GZIP = 'application/vnd.docker.image.rootfs.diff.tar.gzip'
DOCKER_LAYER_FOREIGN = 'application/vnd.docker.image.rootfs.foreign.diff.tar.gzip'

MANIFEST_MEDIA_TYPES: FrozenSet[str] = frozenset({OCI_MANIFEST, DOCKER_MANIFEST})
INDEX_MEDIA_TYPES: FrozenSet[str] = frozenset({OCI_INDEX, DOCKER_MANIFEST_LIST})
CONFIG_MEDIA_TYPES: FrozenSet[str] = frozenset({OCI_CONFIG, OCI_EMPTY, DOCKER_CONFIG})
LAYER_MEDIA_TYPES: FrozenSet[str] = frozenset({
    OCI_LAYER,
    OCI_LAYER_GZIP,
    OCI_LAYER_ZSTD,
    OCI_LAYER_NONDIST,
    OCI_LAYER_NONDIST_GZIP,
    OCI_LAYER_NONDIST_ZSTD,
    DOCKER_LAYER,
    DOCKER_LAYER_GZIP,
    DOCKER_LAYER_FOREIGN,
})

ALLOWED_MEDIA_TYPES: FrozenSet[str] = (
    MANIFEST_MEDIA_TYPES | INDEX_MEDIA_TYPES | CONFIG_MEDIA_TYPES | LAYER_MEDIA_TYPES
)

# Sent as the Accept header on manifest requests, most preferred first
MANIFEST_ACCEPT: Tuple[str, ...] = (OCI_MANIFEST, DOCKER_MANIFEST, OCI_INDEX, DOCKER_MANIFEST_LIST)


def compute_digest(data: bytes, algorithm: str = 'sha256') -> str:
    return f"{algorithm}:{hashlib.new(algorithm, data).hexdigest()}"


def check_media_type(descriptor: 'ContentDescriptor', allowed: FrozenSet[str] = ALLOWED_MEDIA_TYPES) -> None:
    """
    Reject descriptors whose media type is not allow-listed

    Raises:
        UnsupportedMediaType: If ``descriptor.media_type`` is not in ``allowed``
    """
    if descriptor.media_type not in allowed:
        raise UnsupportedMediaType(descriptor.media_type, descriptor.digest)


@dataclass(frozen=True)
class ContentDescriptor:
    """Media type, digest and size of one content-addressable blob"""
    media_type: str
    digest: str
    size: int = 0
    platform: Optional[Dict[str, Any]] = field(default=None, compare=False, hash=False)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ContentDescriptor):
            return NotImplemented
        return self.digest == other.digest

    def __hash__(self) -> int:
        return hash(self.digest)

    @classmethod
    def from_dict(cls, data: Any) -> 'ContentDescriptor':
        """
        Parse an OCI descriptor object

        Raises:
            ManifestDecodeError: If required keys are missing or mistyped
        """
        if not isinstance(data, dict):
            raise ManifestDecodeError('descriptor is not a JSON object')
        media_type = data.get('mediaType')
        digest = data.get('digest')
        size = data.get('size')
        if not isinstance(media_type, str) or not media_type:
            raise ManifestDecodeError('descriptor has no mediaType')
        if not isinstance(digest, str) or ':' not in digest:
            raise ManifestDecodeError(f"descriptor has an invalid digest: {digest!r}")
        if not isinstance(size, int) or isinstance(size, bool) or size < 0:
            raise ManifestDecodeError(f"descriptor {digest} has an invalid size: {size!r}")
        platform = data.get('platform')
        return cls(
            media_type=media_type,
            digest=digest,
            size=size,
            platform=platform if isinstance(platform, dict) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {'mediaType': self.media_type, 'digest': self.digest, 'size': self.size}


@dataclass
class Manifest:
    """An image manifest: one config descriptor and ordered layer descriptors"""
    config: ContentDescriptor
    layers: List[ContentDescriptor]
    media_type: str = OCI_MANIFEST
    raw: bytes = b''

    @classmethod
    def from_bytes(cls, data: bytes, media_type: Optional[str] = None) -> 'Manifest':
        """
        Decode manifest JSON

        Args:
            data: Raw manifest bytes
            media_type: Media type reported by the registry, used when the
                document does not carry its own

        Returns:
            Manifest

        Raises:
            ManifestDecodeError: If the JSON is malformed or not an image manifest
        """
        document = decode_json(data, 'manifest')
        if not isinstance(document, dict):
            raise ManifestDecodeError('manifest is not a JSON object')
        if 'config' not in document:
            raise ManifestDecodeError('manifest has no config descriptor')
        layers = document.get('layers')
        if not isinstance(layers, list):
            raise ManifestDecodeError('manifest has no layers list')

        return cls(
            config=ContentDescriptor.from_dict(document['config']),
            layers=[ContentDescriptor.from_dict(layer) for layer in layers],
            media_type=document.get('mediaType') or media_type or OCI_MANIFEST,
            raw=bytes(data),
        )

    def validate_media_types(self) -> None:
        """
        Check the config and every layer against the allow-list

        Raises:
            UnsupportedMediaType: On the first descriptor that is not allowed
        """
        check_media_type(self.config, CONFIG_MEDIA_TYPES)
        for layer in self.layers:
            check_media_type(layer, LAYER_MEDIA_TYPES)

    def descriptors(self) -> Iterator[ContentDescriptor]:
        yield self.config
        yield from self.layers


def decode_json(data: bytes, what: str) -> Any:
    try:
        return json.loads(data)
    except (ValueError, UnicodeDecodeError) as e:
        raise ManifestDecodeError(f"failed to unmarshal {what}: {e}") from e


def select_platform(entries: List[ContentDescriptor], os_name: str = 'linux',
                    architecture: str = 'amd64') -> ContentDescriptor:
    """
    Pick one manifest out of an index

    Args:
        entries: Manifest descriptors listed by an OCI index or manifest list
        os_name: Preferred platform OS (default: "linux")
        architecture: Preferred platform architecture (default: "amd64")

    Returns:
        The descriptor matching the platform, else the first entry

    Raises:
        ManifestDecodeError: If the index lists no manifests
    """
    if not entries:
        raise ManifestDecodeError('manifest index lists no manifests')
    for entry in entries:
        platform = entry.platform or {}
        if platform.get('os') == os_name and platform.get('architecture') == architecture:
            return entry
    return entries[0]


class MemoryStore:
    """
    In-memory content-addressable store owned by a single job

    Content is keyed by digest; pushing verifies the bytes against the
    descriptor. Closing the store drops everything it holds.
    """

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._closed = False

    def push(self, descriptor: ContentDescriptor, data: bytes) -> None:
        """
        Store a blob under its descriptor's digest

        Raises:
            RegistryFetchError: If the bytes do not match the descriptor's size or digest
        """
        self._check_open()
        if len(data) != descriptor.size:
            raise RegistryFetchError(
                f"size mismatch for {descriptor.digest}: expected {descriptor.size}, got {len(data)}"
            )
        algorithm = descriptor.digest.split(':', 1)[0]
        try:
            actual = compute_digest(data, algorithm)
        except ValueError as e:
            raise RegistryFetchError(f"unsupported digest algorithm in {descriptor.digest}") from e
        if actual != descriptor.digest:
            raise RegistryFetchError(f"digest mismatch: expected {descriptor.digest}, got {actual}")
        self._blobs[descriptor.digest] = bytes(data)

    def fetch(self, descriptor: ContentDescriptor) -> bytes:
        """
        Return the blob for a descriptor

        Raises:
            BlobFetchError: If the store does not hold the digest
        """
        self._check_open()
        try:
            return self._blobs[descriptor.digest]
        except KeyError:
            raise BlobFetchError(f"failed to fetch {descriptor.media_type} {descriptor.digest}: not found") from None

    def exists(self, descriptor: ContentDescriptor) -> bool:
        return not self._closed and descriptor.digest in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)

    def close(self) -> None:
        self._blobs.clear()
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise BlobFetchError('content store is closed')

    def __enter__(self) -> 'MemoryStore':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

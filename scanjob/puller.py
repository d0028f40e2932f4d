"""
OCI artifact puller

Copies one artifact (manifest, config and layers) from a remote registry
into a per-job MemoryStore. Media types are checked before any blob is
fetched, and a rejected descriptor aborts the whole pull.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Tuple, Union

from .auth.base import RegistryCredential
from .content import (
    INDEX_MEDIA_TYPES,
    OCI_INDEX,
    OCI_MANIFEST,
    MANIFEST_MEDIA_TYPES,
    ContentDescriptor,
    Manifest,
    MemoryStore,
    check_media_type,
    decode_json,
    select_platform,
)
from .errors import ManifestDecodeError, NoCredentialForHost
from .reference import ArtifactReference
from .registry import CredentialLookup, RegistryClient

logger = logging.getLogger(__name__)


def credential_lookup(credentials: Mapping[str, RegistryCredential]) -> CredentialLookup:
    """
    Build an authenticator over a job's credential map

    Args:
        credentials: Mapping of registry host to credential

    Returns:
        Callable returning the credential for a host; raises NoCredentialForHost if absent
    """
    def lookup(host: str) -> RegistryCredential:
        try:
            return credentials[host]
        except KeyError:
            raise NoCredentialForHost(host) from None
    return lookup


@dataclass
class PullResult:
    """A pulled artifact: the decoded manifest and the store holding its blobs"""
    reference: ArtifactReference
    descriptor: ContentDescriptor
    manifest: Manifest
    store: MemoryStore

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> 'PullResult':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class OCIPuller:
    """Pulls a single-platform image manifest and its blobs"""

    def __init__(self, client_factory: Callable[[str, CredentialLookup], RegistryClient] = RegistryClient,
                 platform: Tuple[str, str] = ('linux', 'amd64')):
        """
        Initialize puller

        Args:
            client_factory: Callable taking (registry host, credential lookup)
                and returning a registry client
            platform: (os, architecture) picked out of a manifest index
        """
        self.client_factory = client_factory
        self.platform = platform

    def pull(self, ref: Union[str, ArtifactReference],
             credentials: Mapping[str, RegistryCredential]) -> PullResult:
        """
        Pull an artifact into a fresh in-memory store

        Args:
            ref: Artifact reference or reference string
            credentials: Mapping of registry host to credential

        Returns:
            PullResult; the caller owns (and must close) its store

        Raises:
            InvalidReference: If ``ref`` is malformed
            NoCredentialForHost: If the registry host has no credential
            RegistryFetchError: On transport, auth or not-found errors
            ManifestDecodeError: If the manifest is not valid JSON
            UnsupportedMediaType: If any descriptor is outside the allow-list
        """
        if not isinstance(ref, ArtifactReference):
            ref = ArtifactReference.parse(ref)

        client = self.client_factory(ref.registry, credential_lookup(credentials))

        logger.info("Fetching manifest for %s", ref)
        descriptor, data = self._fetch_manifest(client, ref.repository, ref.reference)

        if descriptor.media_type in INDEX_MEDIA_TYPES:
            entry = self._select_from_index(data)
            logger.info("Dereferencing index %s to %s", descriptor.digest, entry.digest)
            descriptor, data = self._fetch_manifest(client, ref.repository, entry.digest)
            if descriptor.media_type in INDEX_MEDIA_TYPES:
                raise ManifestDecodeError(f"nested index {descriptor.digest} is not supported")

        check_media_type(descriptor, MANIFEST_MEDIA_TYPES)
        manifest = Manifest.from_bytes(data, descriptor.media_type)
        manifest.validate_media_types()

        store = MemoryStore()
        try:
            for blob in manifest.descriptors():
                if store.exists(blob):
                    continue
                logger.debug("Fetching %s %s (%d bytes)", blob.media_type, blob.digest, blob.size)
                store.push(blob, client.get_blob(ref.repository, blob))
        except BaseException:
            store.close()
            raise

        logger.info("Pulled %s: %d layers, %d blobs", ref, len(manifest.layers), len(store))
        return PullResult(reference=ref, descriptor=descriptor, manifest=manifest, store=store)

    def _fetch_manifest(self, client: RegistryClient, repository: str,
                        reference: str) -> Tuple[ContentDescriptor, bytes]:
        descriptor, data = client.get_manifest(repository, reference)
        document = decode_json(data, 'manifest')
        if not isinstance(document, dict):
            raise ManifestDecodeError('manifest is not a JSON object')
        # The document's own mediaType wins over a generic Content-Type
        media_type = document.get('mediaType') or descriptor.media_type or _guess_media_type(document)
        return ContentDescriptor(media_type=media_type, digest=descriptor.digest, size=descriptor.size), data

    def _select_from_index(self, data: bytes) -> ContentDescriptor:
        document = decode_json(data, 'manifest index')
        if not isinstance(document, dict) or not isinstance(document.get('manifests'), list):
            raise ManifestDecodeError('manifest index has no manifests list')
        entries = [ContentDescriptor.from_dict(entry) for entry in document['manifests']]
        os_name, architecture = self.platform
        entry = select_platform(entries, os_name=os_name, architecture=architecture)
        check_media_type(entry, MANIFEST_MEDIA_TYPES)
        return entry


def _guess_media_type(document: dict) -> str:
    """Media type for documents that declare none; an index lists manifests, a manifest has a config"""
    if 'manifests' in document:
        return OCI_INDEX
    return OCI_MANIFEST

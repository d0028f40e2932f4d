"""Tests for the artifact puller"""

import json

import pytest

from scanjob.auth.base import RegistryCredential
from scanjob.content import DOCKER_MANIFEST_LIST, OCI_INDEX, OCI_MANIFEST
from scanjob.errors import (
    InvalidReference,
    ManifestDecodeError,
    NoCredentialForHost,
    RegistryFetchError,
    UnsupportedMediaType,
)
from scanjob.puller import OCIPuller

from .conftest import FakeImage, FakeRegistry, blob

CREDENTIALS = {'ghcr.io': RegistryCredential('u', 't')}


def make_index(entries, media_type=OCI_INDEX):
    data = json.dumps({
        'schemaVersion': 2,
        'mediaType': media_type,
        'manifests': [
            dict(image.manifest.to_dict(), platform={'os': os_name, 'architecture': arch})
            for image, os_name, arch in entries
        ],
    }).encode('utf-8')
    return blob(data, media_type), data


def test_pull_image(fake_registry, image):
    puller = OCIPuller(client_factory=fake_registry.client_factory)
    with puller.pull('ghcr.io/example/app:v1.0', CREDENTIALS) as pulled:
        assert fake_registry.hosts == ['ghcr.io']
        assert str(pulled.reference) == 'ghcr.io/example/app:v1.0'
        assert pulled.descriptor.digest == image.manifest.digest
        assert pulled.descriptor.media_type == OCI_MANIFEST
        assert len(pulled.manifest.layers) == 2
        assert len(pulled.store) == 3
        for layer, data in zip(image.layers, image.layer_data):
            assert pulled.store.fetch(layer) == data
    assert pulled.store.closed


def test_pull_without_credential_for_host(fake_registry):
    puller = OCIPuller(client_factory=fake_registry.client_factory)
    with pytest.raises(NoCredentialForHost, match='ghcr.io'):
        puller.pull('ghcr.io/example/app:v1.0', {'docker.io': RegistryCredential('u', 't')})


def test_pull_invalid_reference(fake_registry):
    with pytest.raises(InvalidReference):
        OCIPuller(client_factory=fake_registry.client_factory).pull('not a reference', CREDENTIALS)
    assert fake_registry.hosts == []


def test_pull_missing_tag(fake_registry):
    with pytest.raises(RegistryFetchError) as exc_info:
        OCIPuller(client_factory=fake_registry.client_factory).pull('ghcr.io/example/app:v9', CREDENTIALS)
    assert exc_info.value.status_code == 404


def test_unsupported_media_type_rejected_before_blob_fetch():
    registry = FakeRegistry()
    registry.add_image('chart', FakeImage(config_media_type='application/vnd.cncf.helm.config.v1+json'))
    puller = OCIPuller(client_factory=registry.client_factory)
    with pytest.raises(UnsupportedMediaType):
        puller.pull('ghcr.io/example/chart:chart', CREDENTIALS)
    assert registry.blob_requests == []


def test_unsupported_manifest_media_type():
    registry = FakeRegistry()
    registry.add_image('sig', FakeImage(manifest_media_type='application/vnd.example.signature+json'))
    with pytest.raises(UnsupportedMediaType):
        OCIPuller(client_factory=registry.client_factory).pull('ghcr.io/example/app:sig', CREDENTIALS)
    assert registry.blob_requests == []


@pytest.mark.parametrize('index_media_type', [OCI_INDEX, DOCKER_MANIFEST_LIST])
def test_index_dereferenced_to_linux_amd64(index_media_type):
    arm64 = FakeImage(layer_count=1, name='app-arm64', architecture='arm64')
    amd64 = FakeImage(layer_count=3, name='app-amd64')
    registry = FakeRegistry()
    registry.add_image(arm64.manifest.digest, arm64)
    registry.add_image(amd64.manifest.digest, amd64)
    registry.manifests['multi'] = make_index([(arm64, 'linux', 'arm64'), (amd64, 'linux', 'amd64')], index_media_type)

    with OCIPuller(client_factory=registry.client_factory).pull('ghcr.io/example/app:multi', CREDENTIALS) as pulled:
        assert pulled.descriptor.digest == amd64.manifest.digest
        assert len(pulled.manifest.layers) == 3
        assert pulled.store.fetch(amd64.config) == amd64.config_data
    assert registry.blob_requests == [amd64.config.digest] + [layer.digest for layer in amd64.layers]
    assert arm64.config.digest not in registry.blob_requests
    assert arm64.layers[0].digest not in registry.blob_requests


def test_index_without_platform_match_takes_first_entry():
    first = FakeImage(layer_count=1)
    registry = FakeRegistry()
    registry.add_image(first.manifest.digest, first)
    registry.manifests['windows'] = make_index([(first, 'windows', 'amd64')])

    with OCIPuller(client_factory=registry.client_factory).pull('ghcr.io/example/app:windows', CREDENTIALS) as pulled:
        assert pulled.descriptor.digest == first.manifest.digest


def test_nested_index_rejected():
    inner_descriptor, inner_data = make_index([(FakeImage(), 'linux', 'amd64')])
    outer_data = json.dumps({
        'schemaVersion': 2,
        'mediaType': OCI_INDEX,
        'manifests': [dict(inner_descriptor.to_dict(), platform={'os': 'linux', 'architecture': 'amd64'})],
    }).encode('utf-8')
    registry = FakeRegistry()
    registry.manifests['outer'] = (blob(outer_data, OCI_INDEX), outer_data)
    registry.manifests[inner_descriptor.digest] = (inner_descriptor, inner_data)

    with pytest.raises(UnsupportedMediaType):
        OCIPuller(client_factory=registry.client_factory).pull('ghcr.io/example/app:outer', CREDENTIALS)


def test_manifest_not_json():
    registry = FakeRegistry()
    registry.manifests['broken'] = (blob(b'<html>', OCI_MANIFEST), b'<html>')
    with pytest.raises(ManifestDecodeError):
        OCIPuller(client_factory=registry.client_factory).pull('ghcr.io/example/app:broken', CREDENTIALS)


def test_tampered_blob_closes_store(image):
    registry = FakeRegistry()
    registry.add_image('v1.0', image)
    registry.blobs[image.layers[1].digest] = b'tampered-contents'
    with pytest.raises(RegistryFetchError):
        OCIPuller(client_factory=registry.client_factory).pull('ghcr.io/example/app:v1.0', CREDENTIALS)

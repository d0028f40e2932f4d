"""
Docker-archive builder

Writes a pulled image out as a ``docker save`` style tarball:

    manifest.json       [{"Config": ..., "RepoTags": [...], "Layers": [...]}]
    config.json         image config blob
    oci-manifest.json   raw OCI manifest (optional, for provenance)
    layer1.tar ...      layer blobs in manifest order

Offline scanners read this layout without talking to a registry.
"""

import json
import logging
import os
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Union

from .content import Manifest, MemoryStore
from .errors import ArchiveWriteError

logger = logging.getLogger(__name__)

DOCKER_MANIFEST_FILE = 'manifest.json'
CONFIG_FILE = 'config.json'
OCI_MANIFEST_FILE = 'oci-manifest.json'
LAYER_FILE_FORMAT = 'layer{index}.tar'


def layer_file_name(index: int) -> str:
    """File name of the ``index``-th layer, counting from 1"""
    return LAYER_FILE_FORMAT.format(index=index)


@dataclass
class ArchiveBundle:
    """A sealed docker-archive and the record of what went into it"""
    path: Path
    docker_manifest: List[Dict[str, Any]]
    members: List[str] = field(default_factory=list)

    @property
    def config_file(self) -> str:
        return self.docker_manifest[0]['Config']

    @property
    def layer_files(self) -> List[str]:
        return list(self.docker_manifest[0]['Layers'])


class ArchiveBuilder:
    """Builds a docker-archive from a manifest and a populated content store"""

    def __init__(self, workdir: Union[str, Path], keep_oci_manifest: bool = True, cleanup: bool = True):
        """
        Initialize archive builder

        Args:
            workdir: Job-scoped directory for the loose member files
            keep_oci_manifest: Include the raw OCI manifest in the archive (default: True)
            cleanup: Remove the loose member files once the archive is sealed (default: True)
        """
        self.workdir = Path(workdir)
        self.keep_oci_manifest = keep_oci_manifest
        self.cleanup = cleanup

    def build(self, manifest: Manifest, store: MemoryStore, repo_tag: str,
              output_path: Union[str, Path]) -> ArchiveBundle:
        """
        Write the archive

        Args:
            manifest: Image manifest; layer order is preserved
            store: Content store holding the config and layer blobs
            repo_tag: Value recorded in RepoTags, e.g. "ghcr.io/example/app:v1.0"
            output_path: Where the archive is written

        Returns:
            ArchiveBundle describing the sealed archive

        Raises:
            BlobFetchError: If a blob is missing from the store
            ArchiveWriteError: If writing to disk fails

        On any error no archive is left at ``output_path``.
        """
        output_path = Path(output_path)
        partial_path = output_path.with_name(output_path.name + '.partial')
        written: List[Path] = []

        try:
            self.workdir.mkdir(parents=True, exist_ok=True)

            config_path = self._write(CONFIG_FILE, store.fetch(manifest.config), written)

            layer_paths = []
            for index, layer in enumerate(manifest.layers, start=1):
                layer_paths.append(self._write(layer_file_name(index), store.fetch(layer), written))

            docker_manifest = [
                {
                    'Config': config_path.name,
                    'RepoTags': [repo_tag],
                    'Layers': [path.name for path in layer_paths],
                }
            ]
            manifest_path = self._write(
                DOCKER_MANIFEST_FILE,
                json.dumps(docker_manifest, indent=2).encode('utf-8'),
                written,
            )

            members = [manifest_path, config_path]
            if self.keep_oci_manifest and manifest.raw:
                members.append(self._write(OCI_MANIFEST_FILE, manifest.raw, written))
            members.extend(layer_paths)

            create_tar(partial_path, members)
            os.replace(partial_path, output_path)
        except (OSError, tarfile.TarError) as e:
            self._discard(written, partial_path)
            raise ArchiveWriteError(f"failed to write archive {output_path}: {e}") from e
        except BaseException:
            self._discard(written, partial_path)
            raise

        if self.cleanup:
            self._remove(written)

        logger.info("Wrote %s with %d layers", output_path, len(layer_paths))
        return ArchiveBundle(
            path=output_path,
            docker_manifest=docker_manifest,
            members=[path.name for path in members],
        )

    def _write(self, name: str, data: bytes, written: List[Path]) -> Path:
        path = self.workdir / name
        with open(path, 'wb') as f:
            f.write(data)
        written.append(path)
        return path

    def _discard(self, written: List[Path], partial_path: Path) -> None:
        self._remove(written + [partial_path])

    @staticmethod
    def _remove(paths: List[Path]) -> None:
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Could not remove %s: %s", path, e)


def create_tar(tar_path: Union[str, Path], files: List[Path]) -> None:
    """
    Tar files in the given order under their bare file names

    Headers come from each file's own stat info.

    Args:
        tar_path: Archive to create
        files: Files to add, in member order
    """
    with tarfile.open(tar_path, 'w', format=tarfile.PAX_FORMAT) as tar:
        for path in files:
            info = tar.gettarinfo(str(path), arcname=path.name)
            with open(path, 'rb') as f:
                tar.addfile(info, f)


def read_members(tar_path: Union[str, Path]) -> List[str]:
    """Member names of an archive, in order"""
    with tarfile.open(tar_path, 'r') as tar:
        return tar.getnames()

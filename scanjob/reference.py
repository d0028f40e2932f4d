"""
Artifact reference parsing

An artifact reference names one artifact in a remote registry:
``registry/repository[:tag][@digest]``.
"""

import re
from dataclasses import dataclass
from typing import Optional

from .errors import InvalidReference

DEFAULT_TAG = 'latest'

_REGISTRY_RE = re.compile(
    r'^(?:localhost|[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?'
    r'(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)*)(?::[0-9]+)?$'
)
_COMPONENT_RE = re.compile(r'^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$')
_TAG_RE = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')
_DIGEST_RE = re.compile(r'^(?P<algorithm>[a-z0-9]+(?:[.+_-][a-z0-9]+)*):(?P<hex>[a-zA-Z0-9=_-]+)$')
_DIGEST_LENGTHS = {'sha256': 64, 'sha512': 128}


def _looks_like_registry(component: str) -> bool:
    return '.' in component or ':' in component or component == 'localhost'


def validate_digest(digest: str) -> str:
    """
    Check that a digest string is well formed

    Args:
        digest: Digest such as ``sha256:<64 hex>``

    Returns:
        The digest unchanged

    Raises:
        InvalidReference: If the digest is malformed
    """
    match = _DIGEST_RE.match(digest)
    if not match:
        raise InvalidReference(digest, 'malformed digest')
    expected = _DIGEST_LENGTHS.get(match.group('algorithm'))
    if expected is not None:
        hex_part = match.group('hex')
        if len(hex_part) != expected or not re.fullmatch(r'[a-f0-9]+', hex_part):
            raise InvalidReference(digest, f"{match.group('algorithm')} digest must be {expected} lowercase hex characters")
    return digest


@dataclass(frozen=True)
class ArtifactReference:
    """A parsed registry/repository/tag-or-digest reference"""
    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> 'ArtifactReference':
        """
        Parse a reference string

        Args:
            text: Reference such as "ghcr.io/example/app:v1.0"

        Returns:
            ArtifactReference

        Raises:
            InvalidReference: If the string is not a valid remote reference
        """
        if not isinstance(text, str) or not text.strip():
            raise InvalidReference(str(text), 'empty reference')

        raw = text.strip()
        if '://' in raw:
            raise InvalidReference(raw, 'references must not carry a URL scheme')

        registry, sep, rest = raw.partition('/')
        if not sep or not rest:
            raise InvalidReference(raw, 'missing repository')
        if not _looks_like_registry(registry) or not _REGISTRY_RE.match(registry):
            raise InvalidReference(raw, f'missing or invalid registry host {registry!r}')

        digest = None
        if '@' in rest:
            rest, digest = rest.split('@', 1)
            validate_digest(digest)

        tag = None
        last_slash = rest.rfind('/')
        colon = rest.rfind(':')
        if colon > last_slash:
            rest, tag = rest[:colon], rest[colon + 1:]
            if not _TAG_RE.match(tag):
                raise InvalidReference(raw, f'invalid tag {tag!r}')

        if not rest:
            raise InvalidReference(raw, 'missing repository')
        for component in rest.split('/'):
            if not _COMPONENT_RE.match(component):
                raise InvalidReference(raw, f'invalid repository component {component!r}')

        if tag is None and digest is None:
            tag = DEFAULT_TAG

        return cls(registry=registry, repository=rest, tag=tag, digest=digest)

    @property
    def reference(self) -> str:
        """Digest when pinned, tag otherwise; what the manifest endpoint is asked for"""
        return self.digest or self.tag

    @property
    def host(self) -> str:
        return self.registry

    def __str__(self) -> str:
        name = f"{self.registry}/{self.repository}"
        if self.tag:
            name = f"{name}:{self.tag}"
        if self.digest:
            name = f"{name}@{self.digest}"
        return name

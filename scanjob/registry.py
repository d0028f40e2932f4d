"""
OCI Distribution API client

Talks to one registry host over the /v2 API. Authentication follows the
registry's challenge: on a 401 the ``WWW-Authenticate`` header says whether
to fetch a Bearer token from the realm (using the job's credential as basic
auth) or to send basic auth directly.
"""

import logging
import re
from typing import Callable, Dict, Optional, Tuple

import requests

from .auth.base import RegistryCredential
from .content import MANIFEST_ACCEPT, ContentDescriptor, compute_digest
from .errors import RegistryFetchError

logger = logging.getLogger(__name__)

USER_AGENT = 'scanjob/0.1.0'

CredentialLookup = Callable[[str], RegistryCredential]

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


def parse_challenge(header: str) -> Tuple[str, Dict[str, str]]:
    """
    Parse a WWW-Authenticate header

    Args:
        header: Header value, e.g. 'Bearer realm="...",service="...",scope="..."'

    Returns:
        Tuple of (lower-cased scheme, parameters)
    """
    scheme, _, rest = header.strip().partition(' ')
    return scheme.lower(), dict(_CHALLENGE_PARAM_RE.findall(rest))


class RegistryClient:
    """Minimal pull-only client for one registry host"""

    def __init__(self, registry: str, credential_lookup: CredentialLookup,
                 session: Optional[requests.Session] = None, scheme: str = 'https'):
        """
        Initialize registry client

        Args:
            registry: Registry host, e.g. "ghcr.io"
            credential_lookup: Callable returning the credential for a host;
                raises NoCredentialForHost when the job holds none
            session: requests session (default: a new session)
            scheme: URL scheme (default: "https")
        """
        self.registry = registry
        self.base_url = f"{scheme}://{registry}/v2"
        self.credential_lookup = credential_lookup
        self.session = session or requests.Session()
        self.session.headers.update({
            'User-Agent': USER_AGENT
        })
        # Authorization header value per scope
        self._auth_cache: Dict[str, str] = {}

    def get_manifest(self, repository: str, reference: str) -> Tuple[ContentDescriptor, bytes]:
        """
        Fetch a manifest or index by tag or digest

        Args:
            repository: Repository name (e.g., "example/app")
            reference: Tag or digest

        Returns:
            Tuple of (descriptor for the manifest, raw manifest bytes)

        Raises:
            RegistryFetchError: On transport errors, non-2xx responses or a digest mismatch
            NoCredentialForHost: If the registry demands auth and the job has no credential for it
        """
        url = f"{self.base_url}/{repository}/manifests/{reference}"
        headers = {'Accept': ', '.join(MANIFEST_ACCEPT)}
        response = self._request('GET', url, repository, headers=headers)
        data = response.content

        computed = compute_digest(data)
        digest = response.headers.get('Docker-Content-Digest') or computed
        if reference.startswith('sha256:') and computed != reference:
            raise RegistryFetchError(f"manifest digest mismatch: requested {reference}, got {computed}")

        media_type = response.headers.get('Content-Type', '').split(';', 1)[0].strip()
        return ContentDescriptor(media_type=media_type, digest=digest, size=len(data)), data

    def get_blob(self, repository: str, descriptor: ContentDescriptor) -> bytes:
        """
        Fetch a blob by digest

        Args:
            repository: Repository name
            descriptor: Descriptor of the blob

        Returns:
            Blob bytes

        Raises:
            RegistryFetchError: On transport errors or non-2xx responses
        """
        url = f"{self.base_url}/{repository}/blobs/{descriptor.digest}"
        response = self._request('GET', url, repository)
        return response.content

    def _request(self, method: str, url: str, repository: str,
                 headers: Optional[Dict[str, str]] = None) -> requests.Response:
        scope = f"repository:{repository}:pull"
        headers = dict(headers or {})
        if scope in self._auth_cache:
            headers['Authorization'] = self._auth_cache[scope]

        response = self._send(method, url, headers)
        if response.status_code == 401:
            authorization = self._authorize(response, scope)
            headers['Authorization'] = authorization
            response = self._send(method, url, headers)

        if not 200 <= response.status_code <= 299:
            raise RegistryFetchError(
                f"{method} {url} failed: {response.status_code} {_describe_error(response)}",
                status_code=response.status_code,
            )
        return response

    def _send(self, method: str, url: str, headers: Dict[str, str]) -> requests.Response:
        try:
            return self.session.request(method, url, headers=headers)
        except requests.exceptions.RequestException as e:
            raise RegistryFetchError(f"{method} {url} failed: {e}") from e

    def _authorize(self, response: requests.Response, scope: str) -> str:
        """Answer a 401 challenge and cache the resulting Authorization header"""
        scheme, params = parse_challenge(response.headers.get('WWW-Authenticate', ''))
        credential = self.credential_lookup(self.registry)

        if scheme == 'basic':
            authorization = f"Basic {credential.encoded}"
        elif scheme == 'bearer' and params.get('realm'):
            token = self._fetch_token(params, scope, credential)
            authorization = f"Bearer {token}"
        else:
            raise RegistryFetchError(
                f"unsupported auth challenge from {self.registry}: {response.headers.get('WWW-Authenticate')!r}",
                status_code=401,
            )

        self._auth_cache[scope] = authorization
        return authorization

    def _fetch_token(self, challenge: Dict[str, str], scope: str, credential: RegistryCredential) -> str:
        query = {'scope': challenge.get('scope') or scope}
        if challenge.get('service'):
            query['service'] = challenge['service']

        logger.debug("Requesting registry token from %s for %s", challenge['realm'], query['scope'])
        try:
            response = self.session.get(
                challenge['realm'],
                params=query,
                auth=(credential.username, credential.secret),
            )
        except requests.exceptions.RequestException as e:
            raise RegistryFetchError(f"token request to {challenge['realm']} failed: {e}") from e

        if response.status_code != 200:
            raise RegistryFetchError(
                f"token request to {challenge['realm']} failed: {response.status_code} {_describe_error(response)}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise RegistryFetchError(f"token response from {challenge['realm']} is not JSON: {e}") from e

        token = None
        if isinstance(data, dict):
            token = data.get('token') or data.get('access_token')
        if not token:
            raise RegistryFetchError(f"token response from {challenge['realm']} carries no token")
        return token


def _describe_error(response: requests.Response) -> str:
    """Summarise a registry error body ({"errors": [{"code", "message"}]}) or fall back to the reason"""
    try:
        errors = response.json().get('errors') or []
        messages = [f"{e.get('code')}: {e.get('message')}" for e in errors if isinstance(e, dict)]
        if messages:
            return '; '.join(messages)
    except (ValueError, AttributeError):
        pass
    return response.reason or ''

"""
Base credential resolver class
"""

import base64
import binascii
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from enum import Enum
from typing import Dict, Mapping

from ..errors import AuthProviderError, MissingCredential


class RegistryKind(str, Enum):
    """Registry providers a job can pull from"""
    GHCR = 'ghcr'
    ECR = 'ecr'
    ACR = 'acr'


@dataclass(frozen=True)
class RegistryCredential:
    """Username and secret presented to one registry host"""
    username: str
    secret: str

    @property
    def encoded(self) -> str:
        """Base64 ``username:secret``, the ``auth`` field of a Docker config"""
        return base64.b64encode(f"{self.username}:{self.secret}".encode('utf-8')).decode('ascii')

    @classmethod
    def decode(cls, encoded: str) -> 'RegistryCredential':
        """
        Build a credential from a base64 ``username:secret`` string

        Args:
            encoded: Base64 text, as found in Docker configs and ECR tokens

        Returns:
            RegistryCredential

        Raises:
            AuthProviderError: If the text is not base64 ``username:secret``
        """
        try:
            decoded = base64.b64decode(encoded, validate=True).decode('utf-8')
        except (binascii.Error, ValueError) as e:
            raise AuthProviderError(f"credential is not valid base64: {e}") from e
        username, sep, secret = decoded.partition(':')
        if not sep:
            raise AuthProviderError('credential is not in username:secret form')
        return cls(username=username, secret=secret)

    def __repr__(self) -> str:
        return f"RegistryCredential(username='{self.username}', secret='***')"


CredentialMap = Dict[str, RegistryCredential]


@dataclass
class RegistryParams:
    """Registry credential fields carried in a job's parameter map"""
    github_username: str = ''
    github_token: str = ''
    ecr_account_id: str = ''
    ecr_region: str = ''
    acr_login_server: str = ''
    acr_tenant_id: str = ''

    @classmethod
    def from_params(cls, params: Mapping[str, str]) -> 'RegistryParams':
        """Pick the credential fields out of a job parameter map, ignoring other keys"""
        known = {f.name for f in fields(cls)}
        return cls(**{k: (v or '') for k, v in params.items() if k in known})


class CredentialResolver(ABC):
    """Abstract base class for per-registry credential resolvers"""

    kind: RegistryKind

    @abstractmethod
    def resolve(self, params: RegistryParams) -> CredentialMap:
        """
        Produce credentials for the registry

        Args:
            params: Credential fields from the job

        Returns:
            Mapping of registry host to credential

        Raises:
            MissingCredential: If a required field is empty
            AuthProviderError: If the provider refuses to issue a token
        """
        pass

    def require(self, params: RegistryParams, *names: str) -> None:
        """Raise MissingCredential naming every empty field among ``names``"""
        missing = [name for name in names if not getattr(params, name)]
        if missing:
            raise MissingCredential(self.kind.value.upper(), missing)


def docker_config(credentials: CredentialMap) -> Dict[str, Dict[str, Dict[str, str]]]:
    """
    Render credentials as a Docker ``config.json`` document

    Args:
        credentials: Mapping of registry host to credential

    Returns:
        Dict of the form {"auths": {host: {"auth": base64}}}
    """
    return {
        'auths': {
            host: {'auth': credential.encoded}
            for host, credential in sorted(credentials.items())
        }
    }


def docker_config_json(credentials: CredentialMap) -> str:
    return json.dumps(docker_config(credentials), indent=2)

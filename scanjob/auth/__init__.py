"""
Registry credential resolution

One resolver per registry kind; ``resolve`` picks the right one.
"""

from typing import Dict, Mapping, Optional, Union

from ..errors import UnsupportedRegistry
from .acr import ACRResolver
from .base import (
    CredentialMap,
    CredentialResolver,
    RegistryCredential,
    RegistryKind,
    RegistryParams,
    docker_config,
    docker_config_json,
)
from .ecr import ECRResolver
from .ghcr import GHCRResolver

DEFAULT_REGISTRY_KIND = RegistryKind.GHCR


def parse_registry_kind(kind: Union[str, RegistryKind]) -> RegistryKind:
    """
    Parse a registry kind

    Raises:
        UnsupportedRegistry: If the kind is not ghcr, ecr or acr
    """
    if isinstance(kind, RegistryKind):
        return kind
    try:
        return RegistryKind(str(kind).strip().lower())
    except ValueError:
        raise UnsupportedRegistry(str(kind)) from None


def default_resolvers() -> Dict[RegistryKind, CredentialResolver]:
    return {
        RegistryKind.GHCR: GHCRResolver(),
        RegistryKind.ECR: ECRResolver(),
        RegistryKind.ACR: ACRResolver(),
    }


def resolve(kind: Union[str, RegistryKind],
            params: Union[RegistryParams, Mapping[str, str]],
            resolvers: Optional[Mapping[RegistryKind, CredentialResolver]] = None) -> CredentialMap:
    """
    Resolve credentials for a registry kind

    Args:
        kind: Registry kind ("ghcr", "ecr" or "acr")
        params: Credential fields, or a raw job parameter map
        resolvers: Resolver per kind (default: one of each production resolver)

    Returns:
        Mapping of registry host to credential

    Raises:
        UnsupportedRegistry: For an unknown kind
        MissingCredential: If a required field is empty
        AuthProviderError: If the provider refuses to issue a token
    """
    registry_kind = parse_registry_kind(kind)
    if not isinstance(params, RegistryParams):
        params = RegistryParams.from_params(params)
    if resolvers is None:
        resolvers = default_resolvers()
    return dict(resolvers[registry_kind].resolve(params))


__all__ = [
    'ACRResolver',
    'CredentialMap',
    'CredentialResolver',
    'DEFAULT_REGISTRY_KIND',
    'ECRResolver',
    'GHCRResolver',
    'RegistryCredential',
    'RegistryKind',
    'RegistryParams',
    'docker_config',
    'docker_config_json',
    'parse_registry_kind',
    'resolve',
]

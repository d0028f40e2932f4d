"""
GitHub Container Registry (GHCR) credentials
"""

from .base import CredentialMap, CredentialResolver, RegistryCredential, RegistryKind, RegistryParams

GHCR_HOST = 'ghcr.io'


class GHCRResolver(CredentialResolver):
    """Username plus personal access token; no network calls"""

    kind = RegistryKind.GHCR

    def resolve(self, params: RegistryParams) -> CredentialMap:
        self.require(params, 'github_username', 'github_token')
        return {
            GHCR_HOST: RegistryCredential(username=params.github_username, secret=params.github_token),
        }

"""
Azure Container Registry (ACR) credentials

ACR accepts an Entra ID access token in exchange for a registry refresh
token, which is then traded for a pull-scoped access token.
"""

import logging
from typing import Optional

import requests
from azure.core.exceptions import AzureError
from azure.identity import DefaultAzureCredential

from ..errors import AuthProviderError
from .base import CredentialMap, CredentialResolver, RegistryCredential, RegistryKind, RegistryParams

logger = logging.getLogger(__name__)

AAD_SCOPE = 'https://management.azure.com/.default'
# ACR ignores the username for token auth but requires one to be present
ACR_TOKEN_USERNAME = '00000000-0000-0000-0000-000000000000'
ACR_PULL_SCOPE = 'repository:*:pull'
EXCHANGE_TIMEOUT = 30


class ACRResolver(CredentialResolver):
    """Two-step OAuth exchange against the registry's /oauth2 endpoints"""

    kind = RegistryKind.ACR

    def __init__(self, credential=None, session: Optional[requests.Session] = None,
                 timeout: float = EXCHANGE_TIMEOUT):
        """
        Initialize ACR resolver

        Args:
            credential: azure-identity token credential (default: DefaultAzureCredential)
            session: requests session used for the exchange calls
            timeout: Per-request timeout in seconds (default: 30)
        """
        self._credential = credential
        self.session = session or requests.Session()
        self.session.headers.update({
            'User-Agent': 'scanjob/0.1.0'
        })
        self.timeout = timeout

    @property
    def credential(self):
        if self._credential is None:
            self._credential = DefaultAzureCredential()
        return self._credential

    def resolve(self, params: RegistryParams) -> CredentialMap:
        self.require(params, 'acr_login_server', 'acr_tenant_id')
        login_server = params.acr_login_server.replace('https://', '', 1).rstrip('/')

        try:
            aad_token = self.credential.get_token(AAD_SCOPE).token
        except AzureError as e:
            raise AuthProviderError(f"failed to get AAD token: {e}") from e

        refresh_token = self._exchange_refresh_token(login_server, params.acr_tenant_id, aad_token)
        access_token = self._exchange_access_token(login_server, refresh_token)

        logger.debug("Resolved ACR credential for %s", login_server)
        return {
            login_server: RegistryCredential(username=ACR_TOKEN_USERNAME, secret=access_token),
        }

    def _exchange_refresh_token(self, login_server: str, tenant_id: str, aad_token: str) -> str:
        body = self._post_form(
            f"https://{login_server}/oauth2/exchange",
            {
                'grant_type': 'access_token',
                'service': login_server,
                'tenant': tenant_id,
                'access_token': aad_token,
            },
            step='refresh token exchange',
        )
        token = body.get('refresh_token')
        if not isinstance(token, str) or not token:
            raise AuthProviderError('ACR refresh token exchange: no refresh_token in response')
        return token

    def _exchange_access_token(self, login_server: str, refresh_token: str) -> str:
        body = self._post_form(
            f"https://{login_server}/oauth2/token",
            {
                'grant_type': 'refresh_token',
                'service': login_server,
                'refresh_token': refresh_token,
                'scope': ACR_PULL_SCOPE,
            },
            step='access token exchange',
        )
        token = body.get('access_token')
        if not isinstance(token, str) or not token:
            raise AuthProviderError('ACR access token exchange: no access_token in response')
        return token

    def _post_form(self, url: str, data: dict, step: str) -> dict:
        """
        POST a form and decode the JSON response

        Args:
            url: Endpoint URL
            data: Form fields
            step: Name of the exchange step, used in error messages

        Returns:
            Decoded JSON object

        Raises:
            AuthProviderError: On transport failure, non-2xx status or a malformed body
        """
        try:
            response = self.session.post(url, data=data, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise AuthProviderError(f"ACR {step}: POST {url} failed: {e}") from e

        if not 200 <= response.status_code <= 299:
            raise AuthProviderError(
                f"ACR {step}: non-2xx status {response.status_code} body: {response.text}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise AuthProviderError(f"ACR {step}: invalid JSON response: {e}") from e
        if not isinstance(body, dict):
            raise AuthProviderError(f"ACR {step}: expected a JSON object")
        return body

"""
Amazon Elastic Container Registry (ECR) credentials

ECR hands out a base64 ``AWS:<token>`` pair through GetAuthorizationToken,
scoped to the registry's proxy endpoint.
"""

import logging
from typing import Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import AuthProviderError
from .base import CredentialMap, CredentialResolver, RegistryCredential, RegistryKind, RegistryParams

logger = logging.getLogger(__name__)


def _default_client(region: str):
    return boto3.client('ecr', region_name=region)


class ECRResolver(CredentialResolver):
    """Exchange ambient AWS credentials for an ECR registry token"""

    kind = RegistryKind.ECR

    def __init__(self, client_factory: Optional[Callable[[str], object]] = None):
        """
        Initialize ECR resolver

        Args:
            client_factory: Callable taking a region and returning an ECR client
                (default: boto3.client('ecr', region_name=region))
        """
        self.client_factory = client_factory or _default_client

    def resolve(self, params: RegistryParams) -> CredentialMap:
        self.require(params, 'ecr_account_id', 'ecr_region')

        try:
            client = self.client_factory(params.ecr_region)
            response = client.get_authorization_token(registryIds=[params.ecr_account_id])
        except (BotoCoreError, ClientError) as e:
            raise AuthProviderError(f"failed to get ECR auth token: {e}") from e

        auth_data = response.get('authorizationData') or []
        if not auth_data or not auth_data[0].get('authorizationToken'):
            raise AuthProviderError('no authorization token received from ECR')

        data = auth_data[0]
        endpoint = data.get('proxyEndpoint') or ''
        host = endpoint.replace('https://', '', 1).replace('http://', '', 1).rstrip('/')
        if not host:
            raise AuthProviderError('ECR response carries no proxy endpoint')

        credential = RegistryCredential.decode(data['authorizationToken'])
        logger.debug("Resolved ECR credential for %s (expires %s)", host, data.get('expiresAt'))
        return {host: credential}

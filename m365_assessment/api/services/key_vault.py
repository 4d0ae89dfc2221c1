"""Azure Key Vault secret store for customer client secrets.

Secrets are named ``customer-{tenant_account_id}-client-secret`` and
tagged with the customer and tenant they belong to. The vault client is
created lazily with ``DefaultAzureCredential``; SDK calls are blocking
and run in a worker thread.
"""

import asyncio
import logging
from datetime import datetime

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.keyvault.secrets import KeyVaultSecretIdentifier, SecretClient

from m365_assessment.core.exceptions import VaultUnavailable

logger = logging.getLogger(__name__)

CLIENT_SECRET_CONTENT_TYPE = "application/x-client-secret"


def client_secret_name(tenant_account_id: str) -> str:
    """Key Vault secret name for a tenant account's client secret."""
    return f"customer-{tenant_account_id}-client-secret"


def secret_name_from_reference(reference: str) -> str:
    """Accept either a bare secret name or a full secret identifier URL."""
    return parse_secret_reference(reference)[0]


def parse_secret_reference(reference: str) -> tuple[str, str | None]:
    """Split a reference into secret name and version (None for latest)."""
    if reference.startswith("https://"):
        identifier = KeyVaultSecretIdentifier(reference)
        return identifier.name, identifier.version
    return reference, None


class KeyVaultSecretStore:
    """Thin async wrapper around ``azure.keyvault.secrets.SecretClient``."""

    def __init__(self, vault_url: str, credential=None, client: SecretClient | None = None) -> None:
        self.vault_url = vault_url
        self._credential = credential
        self._client = client

    def _get_client(self) -> SecretClient:
        """Get or create Key Vault client using DefaultAzureCredential."""
        if self._client is None:
            self._client = SecretClient(
                vault_url=self.vault_url,
                credential=self._credential or DefaultAzureCredential(),
            )
            logger.debug(f"Key Vault client initialized: {self.vault_url}")
        return self._client

    async def put(
        self,
        key: str,
        value: str,
        *,
        tags: dict[str, str] | None = None,
        expires_on: datetime | None = None,
    ) -> str:
        """Store a secret and return its versioned identifier.

        Raises:
            VaultUnavailable: If the vault could not be reached or refused
                the write
        """
        client = self._get_client()
        try:
            secret = await asyncio.to_thread(
                client.set_secret,
                key,
                value,
                content_type=CLIENT_SECRET_CONTENT_TYPE,
                tags=tags,
                expires_on=expires_on,
            )
        except AzureError as e:
            raise VaultUnavailable(
                f"Key Vault write of '{key}' failed: {e}",
                cause=type(e).__name__,
            ) from e
        logger.info(f"Stored secret '{key}' in Key Vault")
        return secret.id or key

    async def get(self, key: str) -> str | None:
        """Fetch a secret value, or None when it does not exist."""
        client = self._get_client()
        key, version = parse_secret_reference(key)
        try:
            secret = await asyncio.to_thread(client.get_secret, key, version)
        except ResourceNotFoundError:
            logger.warning(f"Secret '{key}' not found in Key Vault")
            return None
        except AzureError as e:
            raise VaultUnavailable(
                f"Key Vault read of '{key}' failed: {e}",
                cause=type(e).__name__,
            ) from e
        return secret.value

    async def delete(self, key: str) -> bool:
        """Start deletion of a secret. Returns False when it did not exist."""
        client = self._get_client()
        key = secret_name_from_reference(key)
        try:
            await asyncio.to_thread(client.begin_delete_secret, key)
        except ResourceNotFoundError:
            return False
        logger.info(f"Deleted secret '{key}' from Key Vault")
        return True

    async def health_check(self) -> bool:
        """Check that the vault is reachable with the current credential."""
        client = self._get_client()
        try:
            await asyncio.to_thread(lambda: next(iter(client.list_properties_of_secrets()), None))
            return True
        except Exception as e:
            logger.warning(f"Key Vault health check failed: {e}")
            return False

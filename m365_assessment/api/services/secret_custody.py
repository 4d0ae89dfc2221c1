"""Secret custody: vault-preferred storage of issued client secrets.

A freshly issued secret goes to Key Vault when one is configured. Any
vault failure downgrades to inline storage on the credential record and
logs a warning; credential issuance never fails because of the vault.
"""

import logging
from datetime import datetime, timedelta
from typing import Protocol

from m365_assessment.api.services.key_vault import client_secret_name
from m365_assessment.core.credentials import (
    CredentialRecord,
    InlineSecret,
    ManualSetupSecret,
    ProvisioningErrorSecret,
    SecretLocation,
    VaultedSecret,
    unreachable,
)
from m365_assessment.core.exceptions import CredentialsNotReady, VaultUnavailable
from m365_assessment.core.locks import KeyedLocks
from m365_assessment.core.retry import VAULT_POLICY, RetryPolicy, execute_with_retry

logger = logging.getLogger(__name__)


class SecretVault(Protocol):
    async def put(
        self,
        key: str,
        value: str,
        *,
        tags: dict[str, str] | None = None,
        expires_on: datetime | None = None,
    ) -> str: ...

    async def get(self, key: str) -> str | None: ...

    async def delete(self, key: str) -> bool: ...

    async def health_check(self) -> bool: ...


class SecretCustodyManager:
    """Decides where client secrets live and reads them back."""

    def __init__(
        self,
        vault: SecretVault | None,
        validity: timedelta,
        policy: RetryPolicy = VAULT_POLICY,
        created_by: str = "m365-assessment-platform",
    ) -> None:
        self.vault = vault
        self.validity = validity
        self.policy = policy
        self.created_by = created_by
        self._locks = KeyedLocks("vault-writes")

    @property
    def vault_configured(self) -> bool:
        return self.vault is not None

    def expiry_for(self, issued_at: datetime) -> datetime:
        return issued_at + self.validity

    async def store(
        self,
        tenant_account_id: str,
        secret_value: str,
        *,
        tenant_identifier: str | None = None,
        issued_at: datetime | None = None,
    ) -> SecretLocation:
        """Store a secret, preferring the vault.

        Returns:
            ``VaultedSecret`` on a successful vault write, otherwise
            ``InlineSecret`` holding the value
        """
        if self.vault is None:
            logger.warning(
                f"{VaultUnavailable.__name__}: no Key Vault configured; storing client secret "
                f"for tenant account {tenant_account_id} inline (degraded mode)"
            )
            return InlineSecret(secret_value=secret_value)

        key = client_secret_name(tenant_account_id)
        tags = {
            "customerId": tenant_account_id,
            "tenantIdentifier": tenant_identifier or "",
            "type": "client-secret",
            "createdBy": self.created_by,
        }
        expires_on = self.expiry_for(issued_at) if issued_at else None

        try:
            async with self._locks.hold(tenant_account_id):
                reference = await execute_with_retry(
                    lambda: self.vault.put(key, secret_value, tags=tags, expires_on=expires_on),
                    policy=self.policy,
                    description=f"vault put {key}",
                )
        except Exception as e:
            logger.warning(
                f"{VaultUnavailable.__name__}: Key Vault write failed for tenant account "
                f"{tenant_account_id}, storing client secret inline (degraded mode): {e}"
            )
            return InlineSecret(secret_value=secret_value)

        return VaultedSecret(vault_reference=reference)

    async def retrieve(self, source: CredentialRecord | SecretLocation | None) -> str:
        """Return the secret value for a record or location.

        Raises:
            CredentialsNotReady: If no secret was issued or the vault no
                longer has it
        """
        location = source.secret_location if isinstance(source, CredentialRecord) else source

        if location is None:
            raise CredentialsNotReady("No client secret has been issued yet")

        if isinstance(location, InlineSecret):
            return location.secret_value
        if isinstance(location, VaultedSecret):
            if self.vault is None:
                raise CredentialsNotReady(
                    "Client secret is stored in Key Vault but no vault is configured",
                    remediation=["Set KEY_VAULT_URL to the vault that holds customer secrets"],
                )
            try:
                value = await execute_with_retry(
                    lambda: self.vault.get(location.vault_reference),
                    policy=self.policy,
                    description="vault get",
                )
            except Exception as e:
                raise CredentialsNotReady(
                    f"Key Vault read failed: {e}",
                    remediation=["Check Key Vault availability and the platform identity's secret get access"],
                ) from e
            if value is None:
                raise CredentialsNotReady(
                    f"Client secret {location.vault_reference} not found in Key Vault",
                    remediation=["Re-run provisioning to rotate the client secret"],
                )
            return value
        if isinstance(location, ManualSetupSecret):
            raise CredentialsNotReady(
                "Tenant is awaiting manual app registration setup",
                remediation=list(location.instructions) or None,
            )
        if isinstance(location, ProvisioningErrorSecret):
            raise CredentialsNotReady(
                f"No client secret was issued: {location.detail}",
            )
        unreachable(location)


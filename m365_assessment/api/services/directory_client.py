"""Directory API client for app registration provisioning.

Creates the platform's multi-tenant application and service principal
using the platform automation identity, and manages the Microsoft Graph
permissions the application requests. Every call goes through the shared
retry executor; creating calls are only retried when Graph throttled
them, since a timed-out create may still have been applied.
"""

import logging
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import httpx

from m365_assessment.api.services.graph_client import GraphClient
from m365_assessment.core.config import Settings
from m365_assessment.core.exceptions import (
    ConfigurationError,
    DirectoryApiRejected,
    DirectoryApiTransient,
)
from m365_assessment.core.permissions import GRAPH_RESOURCE_APP_ID, build_resource_access
from m365_assessment.core.retry import (
    DIRECTORY_API_POLICY,
    DISCOVERY_POLICY,
    RetryPolicy,
    execute_with_retry,
    is_retryable_error,
    is_retryable_status,
    retry_with_backoff,
)
from m365_assessment.core.tenant_identity import is_guid

logger = logging.getLogger(__name__)

LOGIN_BASE = "https://login.microsoftonline.com"
SIGN_IN_AUDIENCE = "AzureADMultipleOrgs"
PASSWORD_DISPLAY_NAME = "Assessment client secret"
ATTEMPT_TAG_PREFIX = "provisioning-attempt:"

NATIVE_CLIENT_REDIRECT_URIS = [
    "https://login.microsoftonline.com/common/oauth2/nativeclient",
    "urn:ietf:wg:oauth:2.0:oob",
]

_ISSUER_TENANT = re.compile(r"https://[^/]+/([0-9a-fA-F-]{36})/")


@dataclass(frozen=True)
class DirectoryApplication:
    """Identifiers and secret returned by app registration."""

    application_id: str
    client_id: str
    service_principal_id: str
    client_secret: str
    resolved_authority: str | None = None
    secret_expires_at: datetime | None = None


def _graph_timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def is_throttled(error: Exception) -> bool:
    """A throttled request was refused before Graph acted on it."""
    return isinstance(error, DirectoryApiTransient) and error.status_code == 429


class DirectoryClient:
    """Provisioning operations against the platform's home directory."""

    def __init__(
        self,
        settings: Settings,
        policy: RetryPolicy = DIRECTORY_API_POLICY,
        graph_factory: Callable[..., GraphClient] = GraphClient,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.policy = policy
        self._graph_factory = graph_factory
        self._transport = transport
        self._graph: GraphClient | None = None

    def _get_graph(self) -> GraphClient:
        if not self.settings.is_configured:
            raise ConfigurationError(
                "Platform automation identity is not configured",
                cause="AZURE_TENANT_ID, AZURE_CLIENT_ID or AZURE_CLIENT_SECRET is missing",
            )
        if self._graph is None:
            self._graph = self._graph_factory(
                self.settings.azure_tenant_id,
                self.settings.azure_client_id,
                self.settings.azure_client_secret,
                timeout=self.settings.external_call_timeout_seconds,
            )
        return self._graph

    async def _call(self, description: str, func, retryable=is_retryable_error):
        return await execute_with_retry(
            func, policy=self.policy, retryable=retryable, description=description
        )

    async def create_application_and_service_principal(
        self,
        tenant_identifier: str,
        display_name: str,
        required_permissions: set[str] | frozenset[str],
        *,
        secret_expires_at: datetime | None = None,
    ) -> DirectoryApplication:
        """Register the multi-tenant application for a customer.

        If the service principal or client secret cannot be created, the
        new application is deleted again before the error propagates.

        Args:
            tenant_identifier: Customer tenant GUID or domain
            display_name: App registration display name
            required_permissions: Graph application permissions to request
            secret_expires_at: End of the client secret's validity

        Returns:
            DirectoryApplication with the issued client secret

        Raises:
            ConfigurationError: If the automation identity is not configured
            DirectoryApiRejected: If Graph refuses the registration
            DirectoryApiTransient: If Graph stays unavailable after retries
        """
        graph = self._get_graph()
        attempt_tag = f"{ATTEMPT_TAG_PREFIX}{uuid.uuid4()}"
        body = {
            "displayName": display_name,
            "signInAudience": SIGN_IN_AUDIENCE,
            "requiredResourceAccess": [build_resource_access(required_permissions)],
            "web": {
                "redirectUris": [self.settings.consent_redirect_uri],
                "implicitGrantSettings": {
                    "enableIdTokenIssuance": False,
                    "enableAccessTokenIssuance": False,
                },
            },
            "publicClient": {"redirectUris": NATIVE_CLIENT_REDIRECT_URIS},
            "tags": [f"tenant:{tenant_identifier}", attempt_tag],
        }

        logger.info(f"Creating app registration '{display_name}' for tenant {tenant_identifier}")
        application = await self._create_application(graph, body, attempt_tag)

        try:
            service_principal = await self._call(
                "create service principal",
                lambda: graph.create_service_principal(application["appId"]),
                retryable=is_throttled,
            )

            end_date_time = _graph_timestamp(secret_expires_at) if secret_expires_at else None
            password = await self._call(
                "add password",
                lambda: graph.add_password(application["id"], PASSWORD_DISPLAY_NAME, end_date_time),
                retryable=is_throttled,
            )
            secret_text = password.get("secretText")
            if not secret_text:
                raise DirectoryApiRejected(
                    "Graph did not return a client secret for the new application",
                    cause="addPassword response had no secretText",
                    remediation=["Create a client secret for the application manually in Entra ID"],
                )
        except BaseException:
            await self._delete_application(graph, application)
            raise

        resolved_authority = await self.resolve_tenant_id(tenant_identifier)
        logger.info(
            f"Created application {application['appId']} for tenant {tenant_identifier} "
            f"(authority: {resolved_authority or 'unresolved'})"
        )

        return DirectoryApplication(
            application_id=application["id"],
            client_id=application["appId"],
            service_principal_id=service_principal["id"],
            client_secret=secret_text,
            resolved_authority=resolved_authority,
            secret_expires_at=secret_expires_at,
        )

    async def _create_application(self, graph: GraphClient, body: dict, attempt_tag: str) -> dict:
        try:
            return await self._call(
                "create application",
                lambda: graph.create_application(body),
                retryable=is_throttled,
            )
        except (DirectoryApiTransient, TimeoutError, httpx.TransportError) as e:
            # No reply does not mean nothing was created
            existing = await self._call(
                "find application", lambda: graph.find_application_by_tag(attempt_tag)
            )
            if existing is None:
                raise
            logger.warning(
                f"Create of '{body['displayName']}' failed ({e}) but application "
                f"{existing['appId']} was registered; continuing with it"
            )
            return existing

    async def _delete_application(self, graph: GraphClient, application: dict) -> None:
        try:
            await self._call(
                "delete application", lambda: graph.delete_application(application["id"])
            )
            logger.info(f"Deleted half-created application {application['appId']}")
        except Exception as e:
            logger.error(
                f"Could not delete half-created application {application['appId']} "
                f"(object {application['id']}); remove it manually: {e}"
            )

    async def get_current_granted_permissions(self, client_id: str) -> set[str]:
        """Return the Graph app role IDs the application requests."""
        graph = self._get_graph()
        application = await self._call(
            "get application", lambda: graph.get_application_by_app_id(client_id)
        )
        ids: set[str] = set()
        for resource in application.get("requiredResourceAccess", []):
            if resource.get("resourceAppId") != GRAPH_RESOURCE_APP_ID:
                continue
            ids.update(
                access["id"].lower()
                for access in resource.get("resourceAccess", [])
                if access.get("type") == "Role"
            )
        return ids

    async def update_required_permissions(self, client_id: str, graph_resource_access: dict) -> None:
        """Replace the application's Graph permissions, keeping other resources."""
        graph = self._get_graph()
        application = await self._call(
            "get application", lambda: graph.get_application_by_app_id(client_id)
        )
        preserved = [
            resource
            for resource in application.get("requiredResourceAccess", [])
            if resource.get("resourceAppId") != GRAPH_RESOURCE_APP_ID
        ]
        await self._call(
            "update application",
            lambda: graph.update_application(
                application["id"],
                {"requiredResourceAccess": preserved + [graph_resource_access]},
            ),
        )
        logger.info(
            f"Updated Graph permissions for application {client_id}: "
            f"{len(graph_resource_access.get('resourceAccess', []))} roles"
        )

    async def resolve_tenant_id(self, tenant_identifier: str) -> str | None:
        """Resolve a domain to its directory GUID via OpenID discovery.

        Returns None when the domain cannot be resolved; callers fall back
        to the generic authority.
        """
        if is_guid(tenant_identifier):
            return tenant_identifier

        try:
            response = await self._openid_configuration(tenant_identifier)
            if response.status_code != 200:
                logger.warning(
                    f"Could not resolve tenant {tenant_identifier}: HTTP {response.status_code}"
                )
                return None
            match = _ISSUER_TENANT.match(response.json().get("issuer", ""))
        except (httpx.HTTPError, TimeoutError, ValueError) as e:
            logger.warning(f"Could not resolve tenant {tenant_identifier}: {e}")
            return None

        return match.group(1).lower() if match else None

    @retry_with_backoff(DISCOVERY_POLICY)
    async def _openid_configuration(self, tenant_identifier: str) -> httpx.Response:
        url = f"{LOGIN_BASE}/{tenant_identifier}/v2.0/.well-known/openid-configuration"
        async with httpx.AsyncClient(
            timeout=self.settings.external_call_timeout_seconds, transport=self._transport
        ) as client:
            response = await client.get(url)
        if is_retryable_status(response.status_code):
            response.raise_for_status()
        return response

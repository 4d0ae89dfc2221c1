"""Microsoft Graph API client.

Authenticates with client credentials for one tenant and maps Graph
error responses onto the platform error taxonomy: throttling, timeouts
and server errors become ``DirectoryApiTransient``; every other 4xx
becomes ``DirectoryApiRejected`` with remediation steps.
"""

import asyncio
import logging
from typing import Any

import httpx
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import ClientSecretCredential

from m365_assessment.core.exceptions import (
    DirectoryApiError,
    DirectoryApiRejected,
    DirectoryApiTransient,
)
from m365_assessment.core.retry import is_retryable_status

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPES = ["https://graph.microsoft.com/.default"]


def _error_body(response: httpx.Response) -> tuple[str | None, str]:
    try:
        error = response.json().get("error", {})
    except ValueError:
        return None, response.text[:500]
    if not isinstance(error, dict):
        return None, str(error)
    return error.get("code"), error.get("message") or response.reason_phrase


def remediation_for(status_code: int, error_code: str | None, message: str) -> list[str]:
    """Suggest operator actions for a rejected Graph request."""
    text = f"{error_code or ''} {message}".lower()

    if "insufficient privileges" in text or error_code == "Authorization_RequestDenied":
        return [
            "Ensure the calling identity has Application.ReadWrite.All (or the permission "
            "named in the error) with admin consent",
            "Verify the identity is allowed to create app registrations in the tenant",
        ]
    if status_code == 401 or error_code in ("InvalidAuthenticationToken", "invalid_client"):
        return [
            "Grant admin consent for the application in the customer tenant",
            "Check that the client secret has not expired",
        ]
    if status_code == 403:
        return [
            "Grant admin consent for the missing Microsoft Graph permission",
            "Check that the required permission is included in the app registration",
        ]
    if error_code == "Request_ResourceNotFound" or status_code == 404:
        return [
            "Verify the tenant ID or domain is correct",
            "Confirm the object still exists in the directory",
        ]
    if status_code == 409:
        return ["An object with the same identifier already exists; remove it or choose another name"]
    return ["Review the request parameters and the Graph error message"]


def graph_error_from_response(response: httpx.Response) -> DirectoryApiError:
    """Build a typed error for a failed Graph response."""
    error_code, message = _error_body(response)
    status_code = response.status_code
    detail = f"Graph API {response.request.method} {response.request.url.path} " \
             f"returned {status_code}: {message}"

    if is_retryable_status(status_code):
        return DirectoryApiTransient(detail, status_code=status_code, error_code=error_code)
    return DirectoryApiRejected(
        detail,
        status_code=status_code,
        error_code=error_code,
        cause=message,
        remediation=remediation_for(status_code, error_code, message),
    )


class GraphClient:
    """Microsoft Graph API client wrapper."""

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self._client_secret = client_secret
        self.timeout = timeout
        self._transport = transport
        self._credential: ClientSecretCredential | None = None

    def _get_credential(self) -> ClientSecretCredential:
        """Get or create credential."""
        if not self._credential:
            self._credential = ClientSecretCredential(
                tenant_id=self.tenant_id,
                client_id=self.client_id,
                client_secret=self._client_secret,
            )
        return self._credential

    async def _get_token(self) -> str:
        """Get access token for Graph API."""
        credential = self._get_credential()
        try:
            token = await asyncio.to_thread(credential.get_token, *GRAPH_SCOPES)
        except ClientAuthenticationError as e:
            raise DirectoryApiRejected(
                f"Authentication to tenant {self.tenant_id} failed: {e.message}",
                status_code=401,
                cause="The application could not obtain a token for the tenant",
                remediation=remediation_for(401, "invalid_client", str(e.message)),
            ) from e
        return token.token

    async def request(
        self,
        method: str,
        endpoint: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> dict[str, Any]:
        """Make authenticated request to Graph API."""
        token = await self._get_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            url = endpoint if endpoint.startswith("https://") else f"{GRAPH_API_BASE}{endpoint}"
            response = await client.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                json=json,
            )
            if response.is_error:
                raise graph_error_from_response(response)
            if not response.content:
                return {}
            return response.json()

    async def get_all(self, endpoint: str, params: dict | None = None) -> list[dict]:
        """GET a collection, following ``@odata.nextLink`` pages."""
        items: list[dict] = []
        next_endpoint: str | None = endpoint
        while next_endpoint:
            data = await self.request("GET", next_endpoint, params)
            items.extend(data.get("value", []))
            next_endpoint = data.get("@odata.nextLink")
            params = None
        return items

    # =========================================================================
    # Assessment data
    # =========================================================================

    async def get_subscribed_skus(self) -> list[dict]:
        """Get license SKUs the tenant subscribes to."""
        return await self.get_all("/subscribedSkus")

    async def get_latest_secure_score(self) -> dict | None:
        """Get the most recent secure score snapshot."""
        data = await self.request(
            "GET",
            "/security/secureScores",
            {"$top": 1, "$orderby": "createdDateTime desc"},
        )
        scores = data.get("value", [])
        return scores[0] if scores else None

    async def get_secure_score_control_profiles(self) -> list[dict]:
        """Get secure score improvement actions."""
        return await self.get_all("/security/secureScoreControlProfiles")

    async def get_user_registration_details(self) -> list[dict]:
        """Get per-user authentication method registration details."""
        # Requires AuditLog.Read.All or Reports.Read.All
        return await self.get_all("/reports/authenticationMethods/userRegistrationDetails")

    # =========================================================================
    # Application management
    # =========================================================================

    async def create_application(self, body: dict) -> dict:
        return await self.request("POST", "/applications", json=body)

    async def get_application_by_app_id(self, app_id: str) -> dict:
        return await self.request("GET", f"/applications(appId='{app_id}')")

    async def find_application_by_tag(self, tag: str) -> dict | None:
        data = await self.request(
            "GET", "/applications", {"$filter": f"tags/any(t:t eq '{tag}')", "$top": 1}
        )
        applications = data.get("value", [])
        return applications[0] if applications else None

    async def delete_application(self, object_id: str) -> None:
        await self.request("DELETE", f"/applications/{object_id}")

    async def update_application(self, object_id: str, body: dict) -> dict:
        return await self.request("PATCH", f"/applications/{object_id}", json=body)

    async def add_password(
        self, object_id: str, display_name: str, end_date_time: str | None = None
    ) -> dict:
        credential = {"displayName": display_name}
        if end_date_time:
            credential["endDateTime"] = end_date_time
        return await self.request(
            "POST",
            f"/applications/{object_id}/addPassword",
            json={"passwordCredential": credential},
        )

    async def create_service_principal(self, app_id: str) -> dict:
        return await self.request("POST", "/servicePrincipals", json={"appId": app_id})

"""Admin consent URL issuance and callback parsing."""

import json
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from urllib.parse import parse_qsl, urlencode, urlsplit

logger = logging.getLogger(__name__)

LOGIN_BASE = "https://login.microsoftonline.com"
GRAPH_DEFAULT_SCOPE = "https://graph.microsoft.com/.default"


@dataclass(frozen=True)
class ConsentState:
    """Opaque state round-tripped through the admin consent redirect."""

    customer_id: str
    tenant_identifier: str
    request_id: str
    timestamp: str

    def to_dict(self) -> dict[str, str]:
        return {
            "customerId": self.customer_id,
            "tenantIdentifier": self.tenant_identifier,
            "requestId": self.request_id,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ConsentCallbackResult:
    success: bool
    admin_consent: bool
    tenant: str | None
    error: str | None
    error_description: str | None
    state: ConsentState | None


def new_consent_state(customer_id: str, tenant_identifier: str) -> ConsentState:
    return ConsentState(
        customer_id=customer_id,
        tenant_identifier=tenant_identifier,
        request_id=str(uuid.uuid4()),
        timestamp=datetime.now(UTC).isoformat(),
    )


def encode_state(state: ConsentState) -> str:
    return json.dumps(state.to_dict(), separators=(",", ":"), sort_keys=True)


def decode_state(raw: str) -> ConsentState:
    """Parse a state string produced by ``encode_state``.

    Raises:
        ValueError: If the state is not valid JSON or lacks a field
    """
    try:
        data = json.loads(raw)
        return ConsentState(
            customer_id=data["customerId"],
            tenant_identifier=data["tenantIdentifier"],
            request_id=data["requestId"],
            timestamp=data["timestamp"],
        )
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        raise ValueError(f"Invalid consent state: {e}") from e


def build_consent_url(
    authority: str,
    client_id: str,
    redirect_uri: str,
    state: ConsentState,
) -> str:
    """Build the tenant-wide admin consent URL for an app registration."""
    query = urlencode({
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "state": encode_state(state),
        "scope": GRAPH_DEFAULT_SCOPE,
    })
    return f"{LOGIN_BASE}/{authority}/adminconsent?{query}"


def callback_params_from_url(url: str) -> dict[str, str]:
    return dict(parse_qsl(urlsplit(url).query, keep_blank_values=True))


def parse_consent_callback(params: Mapping[str, str | bool | None]) -> ConsentCallbackResult:
    """Interpret the query parameters of an admin consent redirect.

    ``admin_consent`` arrives as the string ``"True"``. The state is
    optional; an undecodable state is logged and dropped.
    """
    raw_consent = params.get("admin_consent")
    if isinstance(raw_consent, bool):
        admin_consent = raw_consent
    else:
        admin_consent = str(raw_consent or "").lower() == "true"

    error = params.get("error") or None
    state = None
    raw_state = params.get("state")
    if raw_state:
        try:
            state = decode_state(str(raw_state))
        except ValueError as e:
            logger.warning(f"Discarding unparseable consent state: {e}")

    return ConsentCallbackResult(
        success=admin_consent and not error,
        admin_consent=admin_consent,
        tenant=params.get("tenant") or None,
        error=error,
        error_description=params.get("error_description") or None,
        state=state,
    )

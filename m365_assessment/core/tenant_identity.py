"""Tenant identifier resolution.

Normalizes the tenant identifier supplied at onboarding and proposes the
authorization endpoint variant ("authority") used for consent and token
requests. Domain-vs-GUID classification is a regex heuristic; a custom
domain that the directory cannot resolve falls back to the multi-tenant
``common`` authority at provisioning time.
"""

import re
from dataclasses import dataclass

from m365_assessment.core.exceptions import MissingTenantIdentifier

COMMON_AUTHORITY = "common"
ONMICROSOFT_SUFFIX = ".onmicrosoft.com"

GUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ResolvedTenant:
    """Result of tenant identifier resolution.

    Attributes:
        tenant_identifier: Directory GUID or lower-cased domain
        authority_hint: Proposed authority (GUID, domain or ``common``)
        needs_confirmation: True when the hint is a domain the directory
            should confirm before it is trusted as an authority
    """

    tenant_identifier: str
    authority_hint: str
    needs_confirmation: bool = False

    @property
    def is_guid(self) -> bool:
        return is_guid(self.tenant_identifier)


def is_guid(value: str | None) -> bool:
    """Check whether a value has the canonical 8-4-4-4-12 GUID shape."""
    return bool(value) and GUID_PATTERN.match(value) is not None


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


def resolve(explicit_id: str | None = None, domain: str | None = None) -> ResolvedTenant:
    """Resolve the tenant identifier and propose an authority hint.

    Args:
        explicit_id: Directory ID supplied by the caller, used verbatim
        domain: Tenant domain, used lower-cased when no explicit ID is given

    Returns:
        ResolvedTenant with a non-empty identifier

    Raises:
        MissingTenantIdentifier: If neither input is present
    """
    if not _blank(explicit_id):
        identifier = explicit_id
    elif not _blank(domain):
        identifier = domain.strip().lower()
    else:
        raise MissingTenantIdentifier(
            "Either tenantId or tenantDomain is required",
            cause="The provisioning request named no tenant",
        )

    if is_guid(identifier):
        return ResolvedTenant(tenant_identifier=identifier, authority_hint=identifier)

    if "." in identifier:
        return ResolvedTenant(
            tenant_identifier=identifier,
            authority_hint=identifier,
            needs_confirmation=True,
        )

    return ResolvedTenant(tenant_identifier=identifier, authority_hint=COMMON_AUTHORITY)


def finalize_authority(resolved: ResolvedTenant, resolved_authority: str | None = None) -> str:
    """Settle the authority once the directory has had a chance to resolve it.

    A directory-confirmed GUID always wins. A GUID identifier or an
    ``*.onmicrosoft.com`` domain is accepted by the login endpoint as-is.
    Any other domain falls back to ``common``.
    """
    if is_guid(resolved_authority):
        return resolved_authority
    if not resolved.needs_confirmation:
        return resolved.authority_hint
    if resolved.tenant_identifier.endswith(ONMICROSOFT_SUFFIX):
        return resolved.tenant_identifier
    return COMMON_AUTHORITY

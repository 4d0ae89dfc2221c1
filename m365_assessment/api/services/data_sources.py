"""Assessment category data sources.

Each source fetches one category from Microsoft Graph using the
customer tenant's own app credentials and reduces it to a summary
payload. Errors are left to propagate; the collector's retry executor
decides what is transient.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from m365_assessment.api.services.graph_client import GraphClient
from m365_assessment.core.scoring import IDENTITY_ACCESS, LICENSE, SECURE_SCORE

logger = logging.getLogger(__name__)


class CategoryDataSource(Protocol):
    category: str

    async def fetch(self, tenant_identifier: str, client_id: str, client_secret: str) -> dict: ...


def _percentage(part: float, whole: float) -> int:
    return round(part / whole * 100) if whole else 0


# =============================================================================
# License utilization
# =============================================================================

# (SKU part-number markers, category, estimated monthly cost per unit)
LICENSE_CATEGORIES: list[tuple[tuple[str, ...], str, int]] = [
    (("E1", "BASIC"), "Basic", 6),
    (("E3", "STANDARD"), "Standard", 22),
    (("E5", "PREMIUM"), "Premium", 38),
    (("ENTERPRISE", "BUSINESS_PREMIUM"), "Enterprise", 32),
]


def categorize_sku(sku_part_number: str | None) -> tuple[str, int]:
    name = (sku_part_number or "").upper()
    for markers, category, unit_cost in LICENSE_CATEGORIES:
        if any(marker in name for marker in markers):
            return category, unit_cost
    return "Other", 0


def summarize_licenses(skus: list[dict]) -> dict[str, Any]:
    """Reduce ``subscribedSkus`` to utilization and cost figures."""
    license_types = []
    for sku in skus:
        total = (sku.get("prepaidUnits") or {}).get("enabled") or 0
        assigned = sku.get("consumedUnits") or 0
        category, unit_cost = categorize_sku(sku.get("skuPartNumber"))
        license_types.append({
            "skuId": sku.get("skuId"),
            "skuPartNumber": sku.get("skuPartNumber"),
            "totalUnits": total,
            "assignedUnits": assigned,
            "availableUnits": total - assigned,
            "utilizationPercentage": _percentage(assigned, total),
            "category": category,
            "estimatedMonthlyCost": total * unit_cost,
            "capabilityStatus": sku.get("capabilityStatus", "Unknown"),
        })

    total_licenses = sum(t["totalUnits"] for t in license_types)
    assigned_licenses = sum(t["assignedUnits"] for t in license_types)
    return {
        "totalLicenses": total_licenses,
        "assignedLicenses": assigned_licenses,
        "availableLicenses": total_licenses - assigned_licenses,
        "utilizationPercentage": _percentage(assigned_licenses, total_licenses),
        "estimatedMonthlyCost": sum(t["estimatedMonthlyCost"] for t in license_types),
        "licenseTypes": license_types,
        "lowUtilizationSkus": [
            t["skuPartNumber"] for t in license_types if t["utilizationPercentage"] < 50
        ],
    }


# =============================================================================
# Secure score
# =============================================================================


def summarize_secure_score(score: dict | None, control_profiles: list[dict]) -> dict[str, Any]:
    """Reduce the latest secure score snapshot and its control profiles."""
    if not score:
        raise ValueError("Tenant has no secure score snapshots yet")

    current = float(score.get("currentScore") or 0)
    maximum = float(score.get("maxScore") or 0)
    profiles = {p.get("id"): p for p in control_profiles}

    controls = []
    for control in score.get("controlScores", []):
        name = control.get("controlName")
        profile = profiles.get(name, {})
        controls.append({
            "controlName": name,
            "category": control.get("controlCategory"),
            "score": control.get("score", 0),
            "maxScore": profile.get("maxScore"),
            "title": profile.get("title", name),
            "implementationStatus": control.get("implementationStatus"),
        })

    return {
        "currentScore": current,
        "maxScore": maximum,
        "percentage": _percentage(current, maximum),
        "createdDateTime": score.get("createdDateTime"),
        "enabledServices": score.get("enabledServices", []),
        "controlScores": controls,
    }


# =============================================================================
# Identity access (authentication methods)
# =============================================================================

STRONG_METHODS = frozenset({
    "microsoftAuthenticatorPasswordless",
    "fido2SecurityKey",
    "passKeyDeviceBound",
    "passKeyDeviceBoundAuthenticator",
    "passKeyDeviceBoundWindowsHello",
    "microsoftAuthenticatorPush",
    "softwareOneTimePasscode",
    "hardwareOneTimePasscode",
    "windowsHelloForBusiness",
    "temporaryAccessPass",
    "macOsSecureEnclaveKey",
})

PASSWORDLESS_METHODS = frozenset({
    "microsoftAuthenticatorPasswordless",
    "fido2SecurityKey",
    "passKeyDeviceBound",
    "passKeyDeviceBoundAuthenticator",
    "passKeyDeviceBoundWindowsHello",
    "windowsHelloForBusiness",
    "macOsSecureEnclaveKey",
})

PHISHING_RESISTANT_METHODS = frozenset({
    "fido2SecurityKey",
    "passKeyDeviceBound",
    "passKeyDeviceBoundAuthenticator",
    "passKeyDeviceBoundWindowsHello",
    "windowsHelloForBusiness",
    "macOsSecureEnclaveKey",
})

WEAK_METHODS = frozenset({
    "mobilePhone",
    "alternateMobilePhone",
    "officePhone",
    "email",
    "securityQuestion",
})


def summarize_registration_details(users: list[dict]) -> dict[str, Any]:
    """Reduce ``userRegistrationDetails`` to MFA coverage percentages."""
    total = len(users)
    mfa_capable = strong = passwordless = weak_only = mixed = 0
    privileged_not_resistant = 0
    privileged = 0

    for user in users:
        methods = set(user.get("methodsRegistered") or [])
        has_strong = bool(methods & STRONG_METHODS)
        has_weak = bool(methods & WEAK_METHODS)

        if user.get("isMfaCapable"):
            mfa_capable += 1
        if has_strong:
            strong += 1
        if methods & PASSWORDLESS_METHODS or user.get("isPasswordlessCapable"):
            passwordless += 1
        if has_weak and not has_strong:
            weak_only += 1
        if has_weak and has_strong:
            mixed += 1
        if user.get("isAdmin"):
            privileged += 1
            if not methods & PHISHING_RESISTANT_METHODS:
                privileged_not_resistant += 1

    return {
        "totalUsers": total,
        "mfaCapableUsers": mfa_capable,
        "mfaCapablePercentage": _percentage(mfa_capable, total),
        "strongAuthPercentage": _percentage(strong, total),
        "passwordlessPercentage": _percentage(passwordless, total),
        "weakOnlyPercentage": _percentage(weak_only, total),
        "mixedMethodsPercentage": _percentage(mixed, total),
        "privilegedUsers": privileged,
        "privilegedNotPhishingResistant": privileged_not_resistant,
    }


# =============================================================================
# Sources
# =============================================================================


class GraphDataSource:
    """Base for sources that read Graph with the tenant's app credentials."""

    category: str = ""

    def __init__(self, graph_factory: Callable[..., GraphClient] = GraphClient, timeout: float = 30.0):
        self._graph_factory = graph_factory
        self.timeout = timeout

    def graph(self, tenant_identifier: str, client_id: str, client_secret: str) -> GraphClient:
        return self._graph_factory(tenant_identifier, client_id, client_secret, timeout=self.timeout)

    def stamp(self, payload: dict) -> dict:
        payload["collectedAt"] = datetime.now(UTC).isoformat()
        return payload


class LicenseDataSource(GraphDataSource):
    category = LICENSE

    async def fetch(self, tenant_identifier: str, client_id: str, client_secret: str) -> dict:
        graph = self.graph(tenant_identifier, client_id, client_secret)
        skus = await graph.get_subscribed_skus()
        logger.debug(f"Fetched {len(skus)} SKUs for tenant {tenant_identifier}")
        return self.stamp(summarize_licenses(skus))


class SecureScoreDataSource(GraphDataSource):
    category = SECURE_SCORE

    async def fetch(self, tenant_identifier: str, client_id: str, client_secret: str) -> dict:
        graph = self.graph(tenant_identifier, client_id, client_secret)
        score = await graph.get_latest_secure_score()
        profiles = await graph.get_secure_score_control_profiles() if score else []
        return self.stamp(summarize_secure_score(score, profiles))


class IdentityAccessDataSource(GraphDataSource):
    category = IDENTITY_ACCESS

    async def fetch(self, tenant_identifier: str, client_id: str, client_secret: str) -> dict:
        graph = self.graph(tenant_identifier, client_id, client_secret)
        users = await graph.get_user_registration_details()
        return self.stamp(summarize_registration_details(users))


def default_data_sources(timeout: float = 30.0) -> dict[str, CategoryDataSource]:
    sources = (
        LicenseDataSource(timeout=timeout),
        SecureScoreDataSource(timeout=timeout),
        IdentityAccessDataSource(timeout=timeout),
    )
    return {source.category: source for source in sources}

"""Least-privilege Microsoft Graph permission composition.

Permissions are requested per feature group and added incrementally.
All are Application permissions requiring admin consent. The name to
app-role-ID table below is versioned; an unmapped name fails the whole
composition instead of being dropped.
"""

from dataclasses import dataclass, field

from m365_assessment.core.exceptions import UnknownFeatureGroup, UnknownPermission

# Microsoft Graph resource application ID
GRAPH_RESOURCE_APP_ID = "00000003-0000-0000-c000-000000000000"

PERMISSION_TABLE_VERSION = "2024-06"

PERMISSION_IDS: dict[str, str] = {
    "User.Read.All": "df021288-bdef-4463-88db-98f22de89214",
    "Directory.Read.All": "7ab1d382-f21e-4acd-a863-ba3e13f7da61",
    "Directory.ReadWrite.All": "19dbc75e-c2e2-444c-a770-ec69d8559fc7",
    "Organization.Read.All": "498476ce-e0fe-48b0-b801-37ba7e2685c6",
    "Reports.Read.All": "230c1aed-a721-4c5d-9cb4-a90514e508ef",
    "Policy.Read.All": "246dd0d5-5bd0-4def-940b-0421030a5b68",
    "SecurityEvents.Read.All": "bf394140-e372-4bf9-a898-299cfc7564e5",
    "IdentityRiskEvent.Read.All": "6e472fd1-ad78-48da-a0f0-97ab2c6b769e",
    "IdentityRiskyUser.Read.All": "dc5007c0-2d7d-4c42-879c-2dab87571379",
    "Agreement.Read.All": "ef4b5d93-3104-4867-9b0b-5cd61b5ffb6f",
    "AuditLog.Read.All": "b0afded3-3588-46d8-8b3d-9842eff778da",
    "RoleManagement.Read.Directory": "483bed4a-2ad3-4361-a73b-c83ccdbdc53c",
    "DeviceManagementManagedDevices.Read.All": "2f51be20-0bb4-4fed-bf7b-db946066c75e",
}

PERMISSION_NAMES: dict[str, str] = {v: k for k, v in PERMISSION_IDS.items()}


@dataclass(frozen=True)
class PermissionFeatureGroup:
    """A named set of permissions enabling one assessment feature."""

    key: str
    permissions: frozenset[str]
    required: bool = False
    description: str = ""


FEATURE_GROUPS: dict[str, PermissionFeatureGroup] = {
    group.key: group
    for group in (
        PermissionFeatureGroup(
            key="core",
            permissions=frozenset({"User.Read.All", "Directory.Read.All", "Organization.Read.All"}),
            required=True,
            description="Basic organization and user information",
        ),
        PermissionFeatureGroup(
            key="reports",
            permissions=frozenset({"Reports.Read.All", "SecurityEvents.Read.All"}),
            description="Usage reports, license utilization and secure score",
        ),
        PermissionFeatureGroup(
            key="policies",
            permissions=frozenset({"Policy.Read.All"}),
            description="Conditional access and authentication method policies",
        ),
        PermissionFeatureGroup(
            key="privilegedRoles",
            permissions=frozenset({"RoleManagement.Read.Directory"}),
            description="Privileged role assignments",
        ),
        PermissionFeatureGroup(
            key="riskIntelligence",
            permissions=frozenset({"IdentityRiskEvent.Read.All"}),
            description="Identity risk detections",
        ),
        PermissionFeatureGroup(
            key="compliance",
            permissions=frozenset({"AuditLog.Read.All", "Agreement.Read.All"}),
            description="Audit logs and terms of use agreements",
        ),
    )
}

CORE_GROUP_KEY = "core"

# Fixed set requested when a tenant is first provisioned
BASELINE_PERMISSIONS: frozenset[str] = frozenset({
    "Organization.Read.All",
    "Reports.Read.All",
    "Directory.Read.All",
    "Policy.Read.All",
    "SecurityEvents.Read.All",
    "IdentityRiskyUser.Read.All",
    "DeviceManagementManagedDevices.Read.All",
    "AuditLog.Read.All",
})


@dataclass(frozen=True)
class CompositionResult:
    final_set: frozenset[str]
    newly_added: frozenset[str]

    @property
    def consent_required(self) -> bool:
        return bool(self.newly_added)


@dataclass(frozen=True)
class FeatureAnalysis:
    enabled: list[str] = field(default_factory=list)
    partial: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)


def group_permissions(group_key: str) -> frozenset[str]:
    """Return the permissions of a feature group."""
    group = FEATURE_GROUPS.get(group_key)
    if group is None:
        raise UnknownFeatureGroup(group_key, known=sorted(FEATURE_GROUPS))
    return group.permissions


def permission_id(name: str) -> str:
    """Map a permission name to its Graph app role ID."""
    try:
        return PERMISSION_IDS[name]
    except KeyError:
        raise UnknownPermission(name) from None


def compose(
    selected_groups: set[str] | frozenset[str],
    existing_permissions: set[str] | frozenset[str],
    extra: set[str] | frozenset[str] = frozenset(),
    replace_all: bool = False,
) -> CompositionResult:
    """Compute the permission set to request for a tenant.

    Args:
        selected_groups: Feature group keys to enable
        existing_permissions: Permissions already granted to the app
        extra: Individual permissions requested in addition to groups
        replace_all: Drop existing permissions not otherwise requested

    Returns:
        CompositionResult with the final set and the permissions that
        were not previously granted

    Raises:
        UnknownFeatureGroup: If a group key is not in the table
        UnknownPermission: If any resulting permission has no mapped ID
    """
    requested: set[str] = set(FEATURE_GROUPS[CORE_GROUP_KEY].permissions)
    for group_key in sorted(selected_groups):
        requested |= group_permissions(group_key)
    requested |= set(extra)

    existing = frozenset(existing_permissions)
    final_set = frozenset(requested if replace_all else requested | existing)

    for name in sorted(final_set):
        permission_id(name)

    return CompositionResult(final_set=final_set, newly_added=final_set - existing)


def build_resource_access(permissions: set[str] | frozenset[str]) -> dict:
    """Build the Graph ``requiredResourceAccess`` entry for a permission set."""
    return {
        "resourceAppId": GRAPH_RESOURCE_APP_ID,
        "resourceAccess": [
            {"id": permission_id(name), "type": "Role"} for name in sorted(permissions)
        ],
    }


def permission_names_from_ids(ids: set[str] | frozenset[str]) -> frozenset[str]:
    """Map Graph app role IDs back to permission names."""
    names = set()
    for role_id in ids:
        name = PERMISSION_NAMES.get(role_id.lower())
        if name is None:
            raise UnknownPermission(role_id)
        names.add(name)
    return frozenset(names)


def analyze_enabled_features(granted: set[str] | frozenset[str]) -> FeatureAnalysis:
    """Classify feature groups as enabled, partially enabled or missing."""
    analysis = FeatureAnalysis()
    for key, group in FEATURE_GROUPS.items():
        present = group.permissions & set(granted)
        if present == group.permissions:
            analysis.enabled.append(key)
        elif present:
            analysis.partial.append(key)
        else:
            analysis.missing.append(key)
    return analysis

"""In-memory fakes for the directory, vault and category data sources."""

import asyncio
from datetime import UTC, datetime, timedelta

from m365_assessment.api.services.directory_client import DirectoryApplication
from m365_assessment.api.services.key_vault import secret_name_from_reference
from m365_assessment.core.permissions import permission_id
from m365_assessment.core.retry import RetryPolicy

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)

# No waiting between attempts in tests
FAST_POLICY = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, timeout=5.0)


class FakeDirectory:
    """In-memory stand-in for the directory API client."""

    def __init__(self, *, fail_with: Exception | None = None, resolved_authority: str | None = None):
        self.fail_with = fail_with
        self.resolved_authority = resolved_authority
        self.created: list[tuple[str, str, frozenset[str]]] = []
        self.granted_ids: dict[str, set[str]] = {}
        self.updates: list[tuple[str, dict]] = []

    async def create_application_and_service_principal(
        self, tenant_identifier, display_name, required_permissions, *, secret_expires_at=None
    ):
        if self.fail_with is not None:
            raise self.fail_with
        n = len(self.created) + 1
        self.created.append((tenant_identifier, display_name, frozenset(required_permissions)))
        application = DirectoryApplication(
            application_id=f"app-object-{n}",
            client_id=f"client-{n}",
            service_principal_id=f"sp-{n}",
            client_secret=f"secret-{n}",
            resolved_authority=self.resolved_authority,
            secret_expires_at=secret_expires_at,
        )
        self.granted_ids[application.client_id] = {
            permission_id(name).lower() for name in required_permissions
        }
        return application

    async def get_current_granted_permissions(self, client_id):
        return set(self.granted_ids.get(client_id, set()))

    async def update_required_permissions(self, client_id, graph_resource_access):
        self.updates.append((client_id, graph_resource_access))
        self.granted_ids[client_id] = {
            access["id"].lower() for access in graph_resource_access["resourceAccess"]
        }


class HangingDirectory(FakeDirectory):
    """Directory whose app registration never completes."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()

    async def create_application_and_service_principal(self, *args, **kwargs):
        self.entered.set()
        await asyncio.Event().wait()


class FakeVault:
    """In-memory secret vault that returns Key Vault style identifiers."""

    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.reachable = True
        self.secrets: dict[str, str] = {}
        self.tags: dict[str, dict] = {}
        self.put_calls = 0

    async def put(self, key, value, *, tags=None, expires_on=None):
        self.put_calls += 1
        if self.fail:
            raise ConnectionError("vault unreachable")
        self.secrets[key] = value
        self.tags[key] = tags or {}
        return f"https://test-vault.vault.azure.net/secrets/{key}/v{self.put_calls}"

    async def get(self, key):
        return self.secrets.get(secret_name_from_reference(key))

    async def delete(self, key):
        return self.secrets.pop(secret_name_from_reference(key), None) is not None

    async def health_check(self):
        return self.reachable


class FakeSource:
    """Category data source returning a fixed payload or raising."""

    def __init__(self, category, payload=None, errors=(), delay: float = 0.0):
        self.category = category
        self.payload = payload or {}
        self.errors = list(errors)
        self.delay = delay
        self.calls = 0

    async def fetch(self, tenant_identifier, client_id, client_secret):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return dict(self.payload)


class Clock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: datetime = FIXED_NOW):
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current

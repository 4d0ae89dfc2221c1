"""Admin consent callback schemas."""

from pydantic import BaseModel


class ConsentCallbackResponse(BaseModel):
    success: bool
    tenant_account_id: str | None = None
    tenant: str | None = None
    tenant_status: str | None = None
    error: str | None = None
    error_description: str | None = None
    remediation: list[str] = []

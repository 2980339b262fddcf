"""
Tenant data models.

TenantConfig is immutable. A registry refresh builds a whole new set of
configs and swaps it in at once, so readers never see a partial update.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenant_sheets.core.config.constants import TENANT_ID_PATTERN, TenantPlan


class TenantConfig(BaseModel):
    """Connection credentials and metadata of one tenant."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(..., description="Unique tenant identifier")
    document_id: str = Field(..., min_length=1, description="Backing document id")
    credentials_ref: str | None = Field(default=None, description="Reference to the tenant's credentials")
    plan: TenantPlan = Field(default=TenantPlan.STARTER, description="Plan used for rate limiting")
    enabled: bool = Field(default=True, description="Disabled tenants are rejected")
    name: str | None = Field(default=None, description="Display name")
    refreshed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("tenant_id")
    @classmethod
    def validate_tenant_id(cls, v: str) -> str:
        if not TENANT_ID_PATTERN.match(v):
            raise ValueError(
                "tenant_id must be 1-64 characters of letters, digits, '-' or '_'"
            )
        return v

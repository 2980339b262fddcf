"""
Declarative tenant registry sources.

A source returns the raw registry mapping; ``parse_registry`` turns it into
TenantConfig objects. Each value is either a bare document id or an object:

    {
        "acme": "1AbC...",
        "globex": {"document_id": "1XyZ...", "plan": "pro", "enabled": false}
    }

``sheetId`` and ``sheet_id`` are accepted as aliases of ``document_id``.
"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import orjson
from pydantic import ValidationError

from tenant_sheets.core.exceptions import InvalidTenantConfigError
from tenant_sheets.core.logging import get_logger, log_stage
from tenant_sheets.tenancy.models import TenantConfig

logger = get_logger(__name__)

_DOCUMENT_ID_ALIASES = ("document_id", "sheetId", "sheet_id")


class TenantSource(Protocol):
    """Anything that can produce the raw registry mapping."""

    name: str

    async def load(self) -> dict[str, Any]:
        ...


def _normalize_entry(tenant_id: str, value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        return {"tenant_id": tenant_id, "document_id": value}

    if not isinstance(value, dict):
        raise InvalidTenantConfigError(
            "Registry entry must be a document id or an object",
            tenant_id=tenant_id,
            details={"type": type(value).__name__},
        )

    document_id = next((value[k] for k in _DOCUMENT_ID_ALIASES if value.get(k)), None)
    entry = {
        k: v for k, v in value.items() if k not in _DOCUMENT_ID_ALIASES and k != "refreshed_at"
    }
    entry["tenant_id"] = tenant_id
    entry["document_id"] = document_id
    return entry


def parse_registry(raw: dict[str, Any], refreshed_at: datetime) -> dict[str, TenantConfig]:
    """
    Build TenantConfig objects from a raw registry mapping.

    Invalid entries are logged and skipped so one bad tenant cannot block
    updates for everybody else. A mapping that is not a dict raises.

    Raises:
        InvalidTenantConfigError: If ``raw`` is not a JSON object
    """
    if not isinstance(raw, dict):
        raise InvalidTenantConfigError(
            "Tenant registry must be a JSON object", details={"type": type(raw).__name__}
        )

    tenants: dict[str, TenantConfig] = {}
    for tenant_id, value in raw.items():
        try:
            entry = _normalize_entry(tenant_id, value)
            tenants[tenant_id] = TenantConfig(**entry, refreshed_at=refreshed_at)
        except (InvalidTenantConfigError, ValidationError) as e:
            log_stage(
                logger,
                "TR.2",
                "Skipping invalid tenant entry",
                level="error",
                tenant_id=tenant_id,
                error=str(e),
            )
    return tenants


class StaticTenantSource:
    """In-code registry, handy for tests and embedded use."""

    name = "static"

    def __init__(self, tenants: dict[str, Any]):
        self._tenants = tenants

    def replace(self, tenants: dict[str, Any]) -> None:
        self._tenants = tenants

    async def load(self) -> dict[str, Any]:
        return dict(self._tenants)


class EnvTenantSource:
    """
    Registry from the TENANT_REGISTRY_JSON setting.

    When the JSON is empty and a default document id is configured, a single
    default tenant is produced instead.
    """

    name = "env"

    def __init__(
        self,
        registry_json: str,
        default_tenant_id: str = "default",
        default_document_id: str | None = None,
        default_credentials_ref: str | None = None,
    ):
        self._registry_json = registry_json
        self._default_tenant_id = default_tenant_id
        self._default_document_id = default_document_id
        self._default_credentials_ref = default_credentials_ref

    async def load(self) -> dict[str, Any]:
        if self._registry_json.strip():
            try:
                return orjson.loads(self._registry_json)
            except orjson.JSONDecodeError as e:
                raise InvalidTenantConfigError.from_exception(
                    e, message="TENANT_REGISTRY_JSON is not valid JSON"
                ) from e

        if self._default_document_id:
            return {
                self._default_tenant_id: {
                    "document_id": self._default_document_id,
                    "credentials_ref": self._default_credentials_ref,
                    "name": "Default Tenant",
                }
            }
        return {}


class FileTenantSource:
    """Registry from a JSON file, re-read on every refresh."""

    name = "file"

    def __init__(self, path: str | Path):
        self._path = Path(path)

    async def load(self) -> dict[str, Any]:
        try:
            content = await asyncio.to_thread(self._path.read_bytes)
            return orjson.loads(content)
        except (OSError, orjson.JSONDecodeError) as e:
            raise InvalidTenantConfigError.from_exception(
                e, message=f"Cannot load tenant registry from {self._path}", path=str(self._path)
            ) from e

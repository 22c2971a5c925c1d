from __future__ import annotations

import uuid
from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class TenantContext:
    """Resolved caller identity; every access-layer call receives one explicitly."""

    user_id: uuid.UUID
    tenant_id: uuid.UUID
    email: str
    name: str
    role: str
    tenant_name: str | None = None
    correlation_id: str | None = None

    def describe(self) -> dict[str, str | None]:
        return {
            "id": str(self.user_id),
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "tenant_id": str(self.tenant_id),
            "tenant": self.tenant_name,
        }

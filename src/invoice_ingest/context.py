"""
Explicit caller context.

Every public operation takes a TenantContext instead of reading tenant and
actor identity from ambient state.
"""

from dataclasses import dataclass

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class TenantContext:
    """Tenant and actor on whose behalf an operation runs."""

    tenant_id: str
    actor_id: str = SYSTEM_ACTOR

    def __post_init__(self) -> None:
        if not self.tenant_id:
            raise ValueError("tenant_id is required")

    @classmethod
    def system(cls, tenant_id: str) -> "TenantContext":
        """Context for background work (workers, schedulers)."""
        return cls(tenant_id=tenant_id, actor_id=SYSTEM_ACTOR)

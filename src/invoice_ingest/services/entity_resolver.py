"""
Entity Resolver.

Finds or creates the vendor (incoming documents) or customer (outgoing
documents) a document belongs to. Never touches the document itself; the
caller stores the returned id.
"""

import logging

from ..clients.registry_client import RegistryInfo
from ..context import TenantContext
from ..state_store.sqlite_store import COUNTERPARTY_TABLES, StateStore

logger = logging.getLogger(__name__)

VENDOR = "vendor"
CUSTOMER = "customer"


class EntityResolver:
    """
    Resolution order:
    1. Tax id given: exact (tenant, tax id) match
    2. No tax id: case-insensitive name match among entries without tax id
    3. Create a new entry
    """

    def __init__(self, store: StateStore):
        self.store = store

    def resolve(
        self,
        ctx: TenantContext,
        role: str,
        name: str,
        tax_id: str | None = None,
        address: str | None = None,
        email: str | None = None,
        iban: str | None = None,
        registry_info: RegistryInfo | None = None,
    ) -> int:
        """
        Resolve a counterparty to its id.

        Args:
            role: "vendor" or "customer"
            registry_info: Registry lookup done during validation, if any

        Returns:
            ID of the existing or newly created entry
        """
        if role not in COUNTERPARTY_TABLES:
            raise ValueError(f"Unknown counterparty role: {role}")
        if not name or not name.strip():
            raise ValueError("Counterparty name is required")
        name = name.strip()
        tax_id = tax_id.strip() if tax_id else None
        checked = registry_info if registry_info is not None and registry_info.checked else None

        if tax_id:
            existing = self.store.find_counterparty_by_tax_id(role, ctx.tenant_id, tax_id)
            if existing:
                if checked:
                    self.store.update_counterparty_registry(
                        role,
                        existing.id,
                        checked.registered_name,
                        checked.registered_address,
                        checked.checked_at or "",
                    )
                return existing.id
        else:
            existing = self.store.find_counterparty_by_name(role, ctx.tenant_id, name)
            if existing:
                return existing.id

        new_id = self.store.create_counterparty(
            role,
            ctx.tenant_id,
            name,
            tax_id=tax_id,
            address=address,
            email=email,
            iban=iban,
            registry_name=checked.registered_name if checked else None,
            registry_address=checked.registered_address if checked else None,
            registry_checked_at=checked.checked_at if checked else None,
        )
        if new_id is None:
            # Lost the race on (tenant, tax id) against another worker
            raced = self.store.find_counterparty_by_tax_id(role, ctx.tenant_id, tax_id or "")
            if raced is None:
                raise RuntimeError(f"Could not resolve {role} {name!r}")
            return raced.id

        logger.info(f"Created {role} {new_id} ({name}) for tenant {ctx.tenant_id}")
        return new_id

from __future__ import annotations

from sqlalchemy import or_


class TenantPredicateError(RuntimeError):
    """An engine query was about to read rules, alerts or snapshots without a tenant scope."""

    def __init__(self, entity: str) -> None:
        self.entity = entity
        self.message = f"Tenant scope is required to query {entity}"
        super().__init__(self.message)


def _entity_name(model) -> str:
    return getattr(model, "__tablename__", None) or getattr(model, "__name__", "rows")


def tenant_predicate(model, tenant_id: str | None, *, include_shared: bool = False):
    # Every tenant-owned read filters through here; shared rows carry a null tenant.
    if not tenant_id:
        raise TenantPredicateError(_entity_name(model))
    if include_shared:
        return or_(model.tenant_id == tenant_id, model.tenant_id.is_(None))
    return model.tenant_id == tenant_id

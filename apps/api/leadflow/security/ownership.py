from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from leadflow.crm.models import Company, Task, Ticket


@dataclass(frozen=True, slots=True)
class OwnershipRule:
    model: type[Any]
    owner_field: str
    raiser_field: str | None


OWNERSHIP_RULES: dict[str, OwnershipRule] = {
    "task": OwnershipRule(model=Task, owner_field="assigned_to_id", raiser_field="raised_by_id"),
    "ticket": OwnershipRule(model=Ticket, owner_field="assigned_to_id", raiser_field="raised_by_id"),
    "company": OwnershipRule(model=Company, owner_field="assigned_data_collector_id", raiser_field=None),
}


@dataclass(frozen=True, slots=True)
class OwnershipRecord:
    resource_type: str
    resource_id: str
    owner_id: str | None
    raiser_id: str | None

    def belongs_to(self, user_id: str | None) -> bool:
        if user_id is None:
            return False
        return user_id in {self.owner_id, self.raiser_id}


def resolve_ownership_rule(resource_type: str, assigned_to_field: str | None = None) -> tuple[OwnershipRule, str]:
    rule = OWNERSHIP_RULES.get(resource_type)
    if rule is None:
        raise ValueError(f"Unsupported resource type: {resource_type}")

    owner_field = assigned_to_field or rule.owner_field
    if owner_field not in rule.model.__table__.columns:
        raise ValueError(f"Unknown ownership column {owner_field!r} for {resource_type}")
    return rule, owner_field


def load_ownership(
    session: Session,
    resource_type: str,
    resource_id: str,
    *,
    assigned_to_field: str | None = None,
) -> OwnershipRecord | None:
    rule, owner_field = resolve_ownership_rule(resource_type, assigned_to_field)
    table = rule.model.__table__
    columns = [table.c[owner_field]]
    if rule.raiser_field is not None:
        columns.append(table.c[rule.raiser_field])

    row = session.execute(select(*columns).where(table.c.id == resource_id)).first()
    if row is None:
        return None
    return OwnershipRecord(
        resource_type=resource_type,
        resource_id=resource_id,
        owner_id=row[0],
        raiser_id=row[1] if rule.raiser_field is not None else None,
    )

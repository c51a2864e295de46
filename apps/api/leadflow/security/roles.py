"""Static role to capability table and the named role groups built on top of it."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass, replace
from enum import StrEnum
from types import MappingProxyType


logger = logging.getLogger("leadflow.security")


class Role(StrEnum):
    ADMIN = "Admin"
    HEAD = "Head"
    SUB_HEAD = "SubHead"
    MANAGER = "Manager"
    CONVERTER = "Converter"
    DATA_COLLECTOR = "DataCollector"


class Capability(StrEnum):
    CAN_READ = "canRead"
    CAN_READ_FINALIZED = "canReadFinalized"
    CAN_CREATE = "canCreate"
    CAN_EDIT = "canEdit"
    CAN_DELETE = "canDelete"
    CAN_BULK_DELETE = "canBulkDelete"
    CAN_ASSIGN_TASKS = "canAssignTasks"
    CAN_UPDATE_OWN_TASKS = "canUpdateOwnTasks"
    CAN_UPDATE_ALL_TASKS = "canUpdateAllTasks"
    CAN_FINALIZE = "canFinalize"
    CAN_EDIT_FINALIZED = "canEditFinalized"
    CAN_MANAGE_USERS = "canManageUsers"
    CAN_COMMENT = "canComment"
    CAN_MANAGE_CUSTOM_FIELDS = "canManageCustomFields"
    CAN_EXPORT_FINALIZED = "canExportFinalized"

    @property
    def attribute(self) -> str:
        return self.name.lower()


@dataclass(frozen=True, slots=True)
class RolePermissions:
    can_read: bool = False
    can_read_finalized: bool = False
    can_create: bool = False
    can_edit: bool = False
    can_delete: bool = False
    can_bulk_delete: bool = False
    can_assign_tasks: bool = False
    can_update_own_tasks: bool = False
    can_update_all_tasks: bool = False
    can_finalize: bool = False
    can_edit_finalized: bool = False
    can_manage_users: bool = False
    can_comment: bool = False
    can_manage_custom_fields: bool = False
    can_export_finalized: bool = False

    def __getitem__(self, capability: Capability) -> bool:
        return getattr(self, capability.attribute)

    def with_overrides(self, overrides: Mapping[Capability, bool]) -> RolePermissions:
        if not overrides:
            return self
        return replace(self, **{capability.attribute: allowed for capability, allowed in overrides.items()})

    def granted(self) -> frozenset[Capability]:
        return frozenset(capability for capability in Capability if self[capability])

    def as_dict(self) -> dict[str, bool]:
        values = asdict(self)
        return {capability.value: values[capability.attribute] for capability in Capability}


NO_PERMISSIONS = RolePermissions()
_ALL_PERMISSIONS = RolePermissions(**{capability.attribute: True for capability in Capability})

ROLE_PERMISSIONS: Mapping[Role, RolePermissions] = MappingProxyType(
    {
        Role.ADMIN: _ALL_PERMISSIONS,
        Role.MANAGER: _ALL_PERMISSIONS,
        Role.HEAD: RolePermissions(
            can_read=True,
            can_read_finalized=True,
            can_assign_tasks=True,
            can_comment=True,
            can_export_finalized=True,
        ),
        Role.SUB_HEAD: RolePermissions(
            can_read=True,
            can_read_finalized=True,
            can_assign_tasks=True,
            can_comment=True,
            can_export_finalized=True,
        ),
        # Company edits for data collectors go through the read-only carve-out.
        Role.DATA_COLLECTOR: RolePermissions(
            can_read=True,
            can_create=True,
            can_update_own_tasks=True,
        ),
        Role.CONVERTER: RolePermissions(
            can_read=True,
            can_edit=True,
            can_update_own_tasks=True,
            can_finalize=True,
            can_comment=True,
        ),
    }
)


MANAGERS: frozenset[Role] = frozenset({Role.ADMIN, Role.MANAGER})
DATA_MANAGERS: frozenset[Role] = frozenset({Role.ADMIN, Role.MANAGER, Role.DATA_COLLECTOR})
READ_ONLY_WITH_COMMENTS: frozenset[Role] = frozenset({Role.HEAD, Role.SUB_HEAD})
TASK_WORKERS: frozenset[Role] = frozenset({Role.DATA_COLLECTOR, Role.CONVERTER})
TASK_ASSIGNERS: frozenset[Role] = frozenset({Role.ADMIN, Role.MANAGER})
FINALIZERS: frozenset[Role] = frozenset({Role.ADMIN, Role.MANAGER})
USER_MANAGERS: frozenset[Role] = frozenset({Role.ADMIN, Role.MANAGER})
CUSTOM_FIELD_MANAGERS: frozenset[Role] = frozenset({Role.ADMIN, Role.MANAGER})
FINALIZED_DATA_EXPORTERS: frozenset[Role] = frozenset({Role.ADMIN, Role.HEAD, Role.SUB_HEAD, Role.MANAGER})
DELETION_REVIEWERS: frozenset[Role] = frozenset({Role.ADMIN, Role.HEAD, Role.SUB_HEAD, Role.MANAGER})

ROLE_GROUPS: Mapping[str, frozenset[Role]] = MappingProxyType(
    {
        "MANAGERS": MANAGERS,
        "DATA_MANAGERS": DATA_MANAGERS,
        "READ_ONLY_WITH_COMMENTS": READ_ONLY_WITH_COMMENTS,
        "TASK_WORKERS": TASK_WORKERS,
        "TASK_ASSIGNERS": TASK_ASSIGNERS,
        "FINALIZERS": FINALIZERS,
        "USER_MANAGERS": USER_MANAGERS,
        "CUSTOM_FIELD_MANAGERS": CUSTOM_FIELD_MANAGERS,
        "FINALIZED_DATA_EXPORTERS": FINALIZED_DATA_EXPORTERS,
        "DELETION_REVIEWERS": DELETION_REVIEWERS,
    }
)


def resolve_role(value: Role | str | None) -> Role | None:
    if value is None or isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        return None


def get_permissions(role: Role | str | None) -> RolePermissions:
    """Return the capability record for ``role``.

    Unknown roles and roles without a table entry fail closed: they get
    :data:`NO_PERMISSIONS` and the gap is logged at error level.
    """
    if role is None:
        return NO_PERMISSIONS

    resolved = resolve_role(role)
    permissions = ROLE_PERMISSIONS.get(resolved) if resolved is not None else None
    if permissions is None:
        logger.error(
            "role_permissions_missing",
            extra={"role": str(role), "severity": "high"},
        )
        return NO_PERMISSIONS
    return permissions


def is_in_role_group(role: Role | str | None, group: frozenset[Role] | str) -> bool:
    members = ROLE_GROUPS.get(group, frozenset()) if isinstance(group, str) else group
    resolved = resolve_role(role)
    return resolved is not None and resolved in members

from __future__ import annotations

import logging
from threading import Lock
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from leadflow.authz.models import RoleCapabilityOverride
from leadflow.core.database import SessionLocal
from leadflow.metrics import observe_capability_cache_hit, observe_capability_cache_miss
from leadflow.security.context import AccessContext
from leadflow.security.roles import Capability, Role, RolePermissions, get_permissions, resolve_role


logger = logging.getLogger("leadflow.security")


class CapabilityBackend(Protocol):
    """Resolves the effective capability record for a role at decision time."""

    def permissions_for(self, role: Role | str | None, ctx: AccessContext | None = None) -> RolePermissions:
        ...


class StaticCapabilityBackend:
    """Static role table only."""

    def permissions_for(self, role: Role | str | None, ctx: AccessContext | None = None) -> RolePermissions:
        return get_permissions(role)


class DbCapabilityBackend:
    """Static table with runtime overrides from ``role_capability_overrides``.

    Overrides are read per request and memoized only on the request's
    :class:`AccessContext`, so an edit is visible to the next request. Admin
    capabilities are fixed and any override rows for Admin are ignored.
    """

    CACHE_KEY = "capabilities.overrides"

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    def permissions_for(self, role: Role | str | None, ctx: AccessContext | None = None) -> RolePermissions:
        base = get_permissions(role)
        resolved = resolve_role(role)
        if resolved is None or resolved is Role.ADMIN:
            return base
        overrides = self._load_overrides(ctx)
        return base.with_overrides(overrides.get(resolved, {}))

    def _load_overrides(self, ctx: AccessContext | None) -> dict[Role, dict[Capability, bool]]:
        if ctx is not None:
            cached = ctx.cache.get(self.CACHE_KEY)
            if isinstance(cached, dict):
                observe_capability_cache_hit()
                return cached

        observe_capability_cache_miss()
        with self._session_factory() as session:
            rows = session.execute(
                select(
                    RoleCapabilityOverride.role,
                    RoleCapabilityOverride.capability,
                    RoleCapabilityOverride.allowed,
                )
            ).all()

        overrides: dict[Role, dict[Capability, bool]] = {}
        for row in rows:
            role = resolve_role(row.role)
            try:
                capability = Capability(row.capability)
            except ValueError:
                capability = None
            if role is None or capability is None:
                logger.warning(
                    "capability_override_ignored",
                    extra={"role": row.role, "capability": row.capability},
                )
                continue
            if role is Role.ADMIN:
                continue
            overrides.setdefault(role, {})[capability] = bool(row.allowed)

        if ctx is not None:
            ctx.cache[self.CACHE_KEY] = overrides
        return overrides


_CAPABILITY_BACKEND: CapabilityBackend = StaticCapabilityBackend()
_CAPABILITY_LOCK = Lock()


def get_capability_backend() -> CapabilityBackend:
    """Get the active capability backend instance."""

    return _CAPABILITY_BACKEND


def set_capability_backend(backend: CapabilityBackend) -> None:
    """Set the active capability backend instance."""

    global _CAPABILITY_BACKEND
    with _CAPABILITY_LOCK:
        _CAPABILITY_BACKEND = backend


def permissions_for(ctx: AccessContext) -> RolePermissions:
    return get_capability_backend().permissions_for(ctx.role, ctx)

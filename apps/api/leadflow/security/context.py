from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from leadflow.core.auth import Principal


@dataclass(slots=True)
class AccessContext:
    """Per-request state threaded through the guard chain.

    ``must_be_assigned_user`` is raised by the task-update guard when the caller
    may only touch tasks assigned to them; the task route checks it against the row.
    """

    principal: Principal | None
    method: str = "GET"
    path: str = "/"
    path_params: dict[str, str] = field(default_factory=dict)
    url: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    correlation_id: str | None = None
    must_be_assigned_user: bool = False
    cache: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def user_id(self) -> str | None:
        return self.principal.id if self.principal is not None else None

    @property
    def role(self) -> str | None:
        return self.principal.role if self.principal is not None else None

    def path_param(self, *names: str) -> str | None:
        for name in names:
            value = self.path_params.get(name)
            if value:
                return value
        return None

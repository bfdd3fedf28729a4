from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from clientportal.config import ConfigurationError
from clientportal.service.errors import ForbiddenError
from clientportal.storage.models import VerifiedIdentity


class Role(str, Enum):
    ADMIN = "admin"
    STAFF = "staff"
    CLIENT = "client"


_CLIENT_ACTIONS = frozenset(
    {
        "view_own_cases",
        "download_own_documents",
        "upload_documents",
        "send_messages",
        "view_own_invoices",
        "update_own_profile",
        "view_notifications",
        "view_dashboard",
    }
)

_STAFF_ACTIONS = frozenset(
    {
        "view_assigned_cases",
        "view_client_cases",
        "upload_documents",
        "update_case_status",
        "send_messages_to_clients",
        "view_client_communications",
        "create_notifications",
        "view_dashboard",
    }
)

_ADMIN_ONLY_ACTIONS = frozenset(
    {
        "view_all_cases",
        "manage_users",
        "view_all_communications",
        "system_administration",
        "view_analytics",
        "manage_portal_access",
        "cross_tenant_access",
        "update_invoice_status",
    }
)

DEFAULT_PERMISSIONS: Mapping[str, frozenset] = MappingProxyType(
    {
        Role.CLIENT.value: _CLIENT_ACTIONS,
        Role.STAFF.value: _STAFF_ACTIONS,
        Role.ADMIN.value: _CLIENT_ACTIONS | _STAFF_ACTIONS | _ADMIN_ONLY_ACTIONS,
    }
)


def _role_name(role: str | Role) -> str:
    return role.value if isinstance(role, Role) else str(role)


class PermissionResolver:
    """Read-only role to action table plus the tenant isolation check."""

    def __init__(self, table: Mapping[str, Iterable[str]] | None = None) -> None:
        raw = DEFAULT_PERMISSIONS if table is None else table
        frozen = {str(role): frozenset(actions) for role, actions in raw.items()}
        for role in Role:
            if not frozen.get(role.value):
                raise ConfigurationError(f"permission table has no actions for role '{role.value}'")
        admin = frozen[Role.ADMIN.value]
        for role, actions in frozen.items():
            if not actions:
                raise ConfigurationError(f"permission table has no actions for role '{role}'")
            missing = actions - admin
            if missing:
                raise ConfigurationError(
                    f"admin permissions must include every action of '{role}'",
                )
        self._table: Mapping[str, frozenset] = MappingProxyType(frozen)

    @property
    def table(self) -> Mapping[str, frozenset]:
        return self._table

    def can(self, role: str | Role, action: str) -> bool:
        return action in self._table.get(_role_name(role), frozenset())

    def can_access_tenant(
        self,
        role: str | Role,
        subject_tenant: Optional[str],
        target_tenant: Optional[str],
    ) -> bool:
        """Single choke point for tenant-scoped reads and writes."""
        if _role_name(role) == Role.ADMIN.value:
            return True
        if not subject_tenant or not target_tenant:
            return False
        return subject_tenant == target_tenant

    def require(self, role: str | Role, action: str) -> None:
        if not self.can(role, action):
            raise ForbiddenError("insufficient permissions", detail={"action": action})

    def require_tenant_access(
        self,
        role: str | Role,
        subject_tenant: Optional[str],
        target_tenant: Optional[str],
    ) -> None:
        if not self.can_access_tenant(role, subject_tenant, target_tenant):
            raise ForbiddenError("tenant access denied")


@dataclass(frozen=True)
class ResolvedRole:
    role: Role
    tenant_scope: Optional[str]


class RoleResolver:
    """Maps a server-verified identity to a role and tenant scope.

    The administrator allow-list is the only way to obtain the admin role.
    """

    def __init__(self, admin_identities: Iterable[str] = ()) -> None:
        self._admins = frozenset(
            identity.strip().lower() for identity in admin_identities if identity.strip()
        )

    def is_admin(self, email: str) -> bool:
        return email.strip().lower() in self._admins

    def resolve(self, identity: VerifiedIdentity) -> ResolvedRole:
        if self.is_admin(identity.email):
            return ResolvedRole(role=Role.ADMIN, tenant_scope=None)
        if not identity.tenant_id:
            raise ForbiddenError("identity has no tenant")
        return ResolvedRole(role=Role.CLIENT, tenant_scope=identity.tenant_id)

    @staticmethod
    def admin_subject_id(email: str) -> str:
        """Stable subject id for allow-listed administrators without an account."""
        digest = hashlib.sha256(email.strip().lower().encode()).hexdigest()
        return f"admin-{digest[:24]}"

"""
auth/permissions.py -- Role shortcut plus explicit grant set.

The administrator bypass is structural: it is matched on the Role variant
before any grant lookup, so no amount of editing user_permissions rows can
take access away from an administrator. Administrators are never given
grant rows for authorization purposes.

Everyone else holds exactly the (module, action) tuples in their explicit
grant set. The set is only ever replaced as a whole (sync_permissions,
assign_default_permissions); pairs that are not in the catalog are dropped
without error.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from auth.audit import audit
from auth.catalog import PermissionCatalog, group_grants
from auth.models import Role, User
from auth.store import UserStore

# A requested grant: either {"modulo": ..., "acciones": [...]} or a
# (module, actions) pair.
RequestedGrant = Mapping | tuple


def _flatten(requested: Iterable[RequestedGrant]) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for item in requested:
        if isinstance(item, Mapping):
            module = item.get("modulo")
            actions = item.get("acciones") or []
        else:
            module, actions = item
        if not module:
            continue
        for action in actions:
            pairs.append((module, action))
    return pairs


class AuthorizationService:
    def __init__(self, store: UserStore, catalog: PermissionCatalog) -> None:
        self._store = store
        self._catalog = catalog

    @property
    def catalog(self) -> PermissionCatalog:
        return self._catalog

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def has_permission(self, user: User, module: str, action: str) -> bool:
        match user.role:
            case Role.ADMINISTRATOR:
                return self._catalog.contains(module, action)
            case _:
                return self._store.has_grant(user.id, module, action)

    def has_module_access(self, user: User, module: str) -> bool:
        match user.role:
            case Role.ADMINISTRATOR:
                return True
            case _:
                return self._store.has_module_grant(user.id, module)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def get_formatted_permissions(self, user: User) -> list[dict]:
        """[{"modulo", "acciones"}] for user.

        Administrators get the whole catalog in catalog order. Everyone else
        gets their own grants, modules and actions in the order granted.
        """
        match user.role:
            case Role.ADMINISTRATOR:
                return self._catalog.grouped()
            case _:
                return group_grants(self._store.get_user_grants(user.id))

    def role_permissions(self, role: Role) -> list[dict]:
        return self._catalog.role_defaults(role)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def seed_catalog(self) -> int:
        """Make sure every catalog tuple has a permissions row. Returns rows created."""
        return self._store.seed_permissions(self._catalog.grants())

    def sync_permissions(self, user: User, requested: Iterable[RequestedGrant]) -> list[tuple[str, str]]:
        """Replace user's grant set with the catalog-valid subset of requested.

        Returns the grants actually stored, in order.
        """
        pairs = [p for p in _flatten(requested) if self._catalog.contains(*p)]
        return self._replace(user, pairs, reason="sync")

    def assign_default_permissions(self, user: User) -> list[tuple[str, str]]:
        """Reset user's grant set to their role's default template.

        Administrators hold every catalog tuple through the role itself, so
        their grant set is emptied rather than filled with the whole catalog.
        """
        match user.role:
            case Role.ADMINISTRATOR:
                return self._replace(user, [], reason="role_default")
            case _:
                return self._replace(user, self._catalog.default_grants(user.role), reason="role_default")

    def _replace(self, user: User, pairs: list[tuple[str, str]], reason: str) -> list[tuple[str, str]]:
        ids = self._store.permission_ids(pairs)
        kept = list(dict.fromkeys(p for p in pairs if p in ids))
        self._store.replace_user_grants(user.id, [ids[p] for p in kept])
        audit("permissions_replaced", user_id=user.id, username=user.username, reason=reason, grants=len(kept))
        return kept

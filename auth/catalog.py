"""
auth/catalog.py -- The fixed universe of (module, action) permissions and the
per-role default templates.

PermissionCatalog is an immutable value built once per process by
default_catalog() and handed to AuthorizationService and the seeding routine.
Nothing mutates it at runtime.

Role defaults are only a template: they are copied into a user's explicit
grant set on provisioning or reset. The administrator entry is ALL_PERMISSIONS
and is never expanded into rows for authorization purposes -- the bypass in
AuthorizationService is structural.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from functools import lru_cache
from types import MappingProxyType

from auth.models import Role

ALL_PERMISSIONS = "*"

MODULE_ACTIONS: dict[str, tuple[str, ...]] = {
    "dashboard": ("ver",),
    "clientes": ("ver", "crear", "editar", "eliminar"),
    "sucursales": ("ver", "crear", "editar", "eliminar"),
    "simulador": ("usar", "imprimir", "guardar"),
    "creditos": ("ver", "crear", "renovar", "cancelar", "pasar_venta"),
    "prendas": ("ver", "editar", "cambiar_estado", "vender"),
    "ventas": ("ver", "tasar", "vender", "apartar", "crear_plan_pago", "modificar_precio", "aplicar_descuento"),
    "caja": ("abrir", "cerrar", "ver_movimientos"),
    "cobros": ("realizar", "ver", "imprimir_recibo"),
    "historial": ("ver",),
    "reportes": ("generar", "exportar"),
    "usuarios": ("ver", "crear", "editar", "eliminar", "asignar_permisos"),
}

ROLE_DEFAULTS: dict[Role, object] = {
    Role.ADMINISTRATOR: ALL_PERMISSIONS,
    Role.CASHIER: {
        "dashboard": ("ver",),
        "clientes": ("ver", "crear"),
        "creditos": ("ver", "crear"),
        "caja": ("abrir", "cerrar", "ver_movimientos"),
        "cobros": ("realizar", "ver", "imprimir_recibo"),
        "prendas": ("ver",),
        "historial": ("ver",),
    },
    Role.APPRAISER: {
        "dashboard": ("ver",),
        "clientes": ("ver",),
        "simulador": ("usar", "imprimir", "guardar"),
        "prendas": ("ver",),
        "ventas": ("ver", "tasar"),
        "historial": ("ver",),
    },
    Role.SELLER: {
        "dashboard": ("ver",),
        "clientes": ("ver", "crear"),
        "ventas": ("ver", "vender", "apartar", "crear_plan_pago", "aplicar_descuento"),
        "prendas": ("ver",),
        "historial": ("ver",),
    },
    Role.SUPERVISOR: {
        "dashboard": ("ver",),
        "clientes": ("ver",),
        "creditos": ("ver", "renovar"),
        "prendas": ("ver", "cambiar_estado"),
        "ventas": ("ver", "modificar_precio", "aplicar_descuento"),
        "reportes": ("generar", "exportar"),
        "caja": ("ver_movimientos",),
        "historial": ("ver",),
    },
}

Grant = tuple[str, str]


def group_grants(grants: Iterable[Grant]) -> list[dict]:
    """Group (module, action) pairs into [{"modulo", "acciones"}] keeping first-seen order."""
    grouped: dict[str, list[str]] = {}
    for module, action in grants:
        actions = grouped.setdefault(module, [])
        if action not in actions:
            actions.append(action)
    return [{"modulo": module, "acciones": actions} for module, actions in grouped.items()]


@dataclass(frozen=True)
class PermissionCatalog:
    modules: Mapping[str, tuple[str, ...]]
    role_table: Mapping[Role, object]

    def contains(self, module: str, action: str) -> bool:
        return action in self.modules.get(module, ())

    def grants(self) -> list[Grant]:
        """Every catalog tuple, in catalog order."""
        return [(module, action) for module, actions in self.modules.items() for action in actions]

    def grouped(self) -> list[dict]:
        return [{"modulo": module, "acciones": list(actions)} for module, actions in self.modules.items()]

    def default_grants(self, role: Role) -> list[Grant]:
        """Tuples a freshly provisioned user of role receives.

        Entries in the role table that are not in the catalog are dropped.
        A role missing from the table gets nothing.
        """
        template = self.role_table.get(role)
        if template is None:
            return []
        if template == ALL_PERMISSIONS:
            return self.grants()
        return [
            (module, action)
            for module, actions in template.items()
            for action in actions
            if self.contains(module, action)
        ]

    def role_defaults(self, role: Role) -> list[dict]:
        """Grouped view of a role's default template."""
        return group_grants(self.default_grants(role))


def build_catalog(
    modules: Mapping[str, Iterable[str]],
    role_table: Mapping[Role, object],
) -> PermissionCatalog:
    frozen_roles = {}
    for role, template in role_table.items():
        if template == ALL_PERMISSIONS:
            frozen_roles[role] = ALL_PERMISSIONS
        else:
            frozen_roles[role] = MappingProxyType({m: tuple(a) for m, a in template.items()})
    return PermissionCatalog(
        modules=MappingProxyType({m: tuple(a) for m, a in modules.items()}),
        role_table=MappingProxyType(frozen_roles),
    )


@lru_cache
def default_catalog() -> PermissionCatalog:
    """The application catalog, built once per process."""
    return build_catalog(MODULE_ACTIONS, ROLE_DEFAULTS)

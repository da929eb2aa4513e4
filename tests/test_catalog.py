"""
tests/test_catalog.py -- Unit tests for the permission catalog and role templates.
"""

from __future__ import annotations

import pytest

from auth.catalog import ALL_PERMISSIONS, MODULE_ACTIONS, build_catalog, default_catalog, group_grants
from auth.models import Role

CASHIER_DEFAULTS = {
    ("dashboard", "ver"),
    ("clientes", "ver"),
    ("clientes", "crear"),
    ("creditos", "ver"),
    ("creditos", "crear"),
    ("caja", "abrir"),
    ("caja", "cerrar"),
    ("caja", "ver_movimientos"),
    ("cobros", "realizar"),
    ("cobros", "ver"),
    ("cobros", "imprimir_recibo"),
    ("prendas", "ver"),
    ("historial", "ver"),
}


def test_catalog_is_built_once() -> None:
    assert default_catalog() is default_catalog()


def test_catalog_contains() -> None:
    catalog = default_catalog()
    assert catalog.contains("usuarios", "asignar_permisos")
    assert not catalog.contains("usuarios", "volar")
    assert not catalog.contains("naves", "ver")


def test_grants_in_catalog_order() -> None:
    grants = default_catalog().grants()
    assert grants[0] == ("dashboard", "ver")
    assert grants[-1] == ("usuarios", "asignar_permisos")
    assert len(grants) == sum(len(a) for a in MODULE_ACTIONS.values()) == 42


def test_grouped_view_lists_every_module() -> None:
    grouped = default_catalog().grouped()
    assert [g["modulo"] for g in grouped] == list(MODULE_ACTIONS)
    assert grouped[1] == {"modulo": "clientes", "acciones": ["ver", "crear", "editar", "eliminar"]}


def test_catalog_is_immutable() -> None:
    with pytest.raises(TypeError):
        default_catalog().modules["nuevo"] = ("ver",)


def test_cashier_defaults_exact_set() -> None:
    assert set(default_catalog().default_grants(Role.CASHIER)) == CASHIER_DEFAULTS


def test_administrator_template_expands_to_everything() -> None:
    catalog = default_catalog()
    assert catalog.default_grants(Role.ADMINISTRATOR) == catalog.grants()
    assert catalog.role_defaults(Role.ADMINISTRATOR) == catalog.grouped()


@pytest.mark.parametrize("role", [Role.CASHIER, Role.APPRAISER, Role.SELLER, Role.SUPERVISOR])
def test_every_template_is_inside_the_catalog(role: Role) -> None:
    catalog = default_catalog()
    assert all(catalog.contains(*g) for g in catalog.default_grants(role))


def test_unknown_template_entries_are_dropped() -> None:
    catalog = build_catalog(
        {"caja": ["abrir"]},
        {Role.CASHIER: {"caja": ["abrir", "explotar"], "naves": ["ver"]}, Role.ADMINISTRATOR: ALL_PERMISSIONS},
    )
    assert catalog.default_grants(Role.CASHIER) == [("caja", "abrir")]
    assert catalog.default_grants(Role.SELLER) == []


def test_group_grants_keeps_first_seen_order() -> None:
    grouped = group_grants([("caja", "cerrar"), ("clientes", "ver"), ("caja", "abrir"), ("caja", "cerrar")])
    assert grouped == [
        {"modulo": "caja", "acciones": ["cerrar", "abrir"]},
        {"modulo": "clientes", "acciones": ["ver"]},
    ]

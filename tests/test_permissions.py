"""
tests/test_permissions.py -- Unit tests for AuthorizationService against a real UserStore.

Covers:
  - Administrator bypass, with and without grant rows
  - Non-administrators hold exactly their explicit grants
  - sync_permissions drops pairs outside the catalog and keeps request order
  - assign_default_permissions replaces the whole set
  - Seeding the catalog is idempotent
"""

from __future__ import annotations

from auth.catalog import default_catalog
from auth.models import Role
from auth.permissions import AuthorizationService
from auth.store import UserStore


class TestAdministratorBypass:
    def test_admin_passes_every_catalog_check_without_rows(self, authz: AuthorizationService, user_factory) -> None:
        admin = user_factory("jefa", role=Role.ADMINISTRATOR)
        assert authz.has_permission(admin, "usuarios", "eliminar")
        assert authz.has_permission(admin, "reportes", "exportar")
        assert authz.has_module_access(admin, "sucursales")

    def test_admin_bypass_survives_empty_grant_set(self, authz: AuthorizationService, user_factory) -> None:
        admin = user_factory("jefa", role=Role.ADMINISTRATOR)
        authz.sync_permissions(admin, [])
        assert authz.has_permission(admin, "caja", "abrir")

    def test_admin_is_refused_tuples_outside_the_catalog(self, authz: AuthorizationService, user_factory) -> None:
        admin = user_factory("jefa", role=Role.ADMINISTRATOR)
        assert not authz.has_permission(admin, "caja", "robar")

    def test_admin_formatted_permissions_is_the_catalog(self, authz: AuthorizationService, user_factory) -> None:
        admin = user_factory("jefa", role=Role.ADMINISTRATOR)
        assert authz.get_formatted_permissions(admin) == default_catalog().grouped()

    def test_admin_defaults_store_no_grant_rows(
        self, authz: AuthorizationService, user_factory, user_store: UserStore
    ) -> None:
        admin = user_factory("jefa", role=Role.ADMINISTRATOR)
        authz.sync_permissions(admin, [("caja", ["abrir"])])

        assert authz.assign_default_permissions(admin) == []
        assert user_store.get_user_grants(admin.id) == []
        assert authz.has_permission(admin, "usuarios", "asignar_permisos")
        assert authz.get_formatted_permissions(admin) == default_catalog().grouped()


class TestExplicitGrants:
    def test_new_user_has_nothing(self, authz: AuthorizationService, user_factory) -> None:
        seller = user_factory("ana", role=Role.SELLER)
        assert not authz.has_permission(seller, "dashboard", "ver")
        assert not authz.has_module_access(seller, "dashboard")
        assert authz.get_formatted_permissions(seller) == []

    def test_cashier_defaults(self, authz: AuthorizationService, user_factory) -> None:
        cashier = user_factory("maria", role=Role.CASHIER)
        granted = authz.assign_default_permissions(cashier)

        assert len(granted) == 13
        assert authz.has_permission(cashier, "caja", "abrir")
        assert authz.has_permission(cashier, "cobros", "imprimir_recibo")
        assert not authz.has_permission(cashier, "ventas", "vender")
        assert not authz.has_permission(cashier, "usuarios", "ver")
        assert authz.has_module_access(cashier, "creditos")
        assert not authz.has_module_access(cashier, "reportes")

    def test_sync_drops_unknown_pairs(self, authz: AuthorizationService, user_factory) -> None:
        seller = user_factory("ana", role=Role.SELLER)
        kept = authz.sync_permissions(
            seller,
            [
                {"modulo": "ventas", "acciones": ["ver", "teletransportar"]},
                {"modulo": "naves", "acciones": ["ver"]},
                ("clientes", ["crear"]),
            ],
        )
        assert kept == [("ventas", "ver"), ("clientes", "crear")]
        assert authz.has_permission(seller, "ventas", "ver")
        assert not authz.has_permission(seller, "naves", "ver")

    def test_sync_replaces_rather_than_merges(self, authz: AuthorizationService, user_factory) -> None:
        cashier = user_factory("maria", role=Role.CASHIER)
        authz.assign_default_permissions(cashier)
        authz.sync_permissions(cashier, [{"modulo": "reportes", "acciones": ["generar"]}])
        assert authz.get_formatted_permissions(cashier) == [{"modulo": "reportes", "acciones": ["generar"]}]
        assert not authz.has_permission(cashier, "caja", "abrir")

    def test_formatted_permissions_keep_grant_order(self, authz: AuthorizationService, user_factory) -> None:
        seller = user_factory("ana", role=Role.SELLER)
        authz.sync_permissions(
            seller,
            [
                {"modulo": "ventas", "acciones": ["vender", "ver"]},
                {"modulo": "clientes", "acciones": ["ver"]},
                {"modulo": "ventas", "acciones": ["apartar"]},
            ],
        )
        assert authz.get_formatted_permissions(seller) == [
            {"modulo": "ventas", "acciones": ["vender", "ver", "apartar"]},
            {"modulo": "clientes", "acciones": ["ver"]},
        ]

    def test_duplicate_requested_pairs_collapse(self, authz: AuthorizationService, user_factory) -> None:
        seller = user_factory("ana", role=Role.SELLER)
        kept = authz.sync_permissions(seller, [("ventas", ["ver", "ver"])])
        assert kept == [("ventas", "ver")]

    def test_reset_to_defaults_after_custom_grants(self, authz: AuthorizationService, user_factory) -> None:
        appraiser = user_factory("juan", role=Role.APPRAISER)
        authz.sync_permissions(appraiser, [("usuarios", ["eliminar"])])
        authz.assign_default_permissions(appraiser)
        assert not authz.has_permission(appraiser, "usuarios", "eliminar")
        assert authz.has_permission(appraiser, "ventas", "tasar")

    def test_role_permissions_view(self, authz: AuthorizationService) -> None:
        groups = authz.role_permissions(Role.SUPERVISOR)
        assert {"modulo": "reportes", "acciones": ["generar", "exportar"]} in groups


class TestSeeding:
    def test_seed_is_idempotent(self, user_store: UserStore) -> None:
        authz = AuthorizationService(user_store, default_catalog())
        assert authz.seed_catalog() == 42
        assert authz.seed_catalog() == 0
        rows = user_store.list_permissions()
        assert len(rows) == 42
        assert rows[0].description == "Ver en Dashboard"

    def test_grants_survive_reseed(self, authz: AuthorizationService, user_factory) -> None:
        cashier = user_factory("maria", role=Role.CASHIER)
        authz.assign_default_permissions(cashier)
        authz.seed_catalog()
        assert authz.has_permission(cashier, "caja", "cerrar")

    def test_deleting_a_user_drops_their_grants(self, authz: AuthorizationService, user_factory, user_store: UserStore) -> None:
        cashier = user_factory("maria", role=Role.CASHIER)
        authz.assign_default_permissions(cashier)
        user_store.delete_user(cashier.id)
        assert user_store.get_user_grants(cashier.id) == []

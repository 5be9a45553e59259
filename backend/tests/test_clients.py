"""
Client and contract tests.

Verifies:
- Client visibility follows view_all_clients (own clients otherwise)
- Only administrators and operators assign a client to another manager
- Only administrators reassign or archive clients
- Contract numbers are unique; contract totals exclude canceled deals
- Contracts can be updated but never move to another client
- Client history and payments follow client visibility
"""

from datetime import date

import pytest

from printcrm.extensions import db
from printcrm.models import AuditLog, Client
from printcrm.services import audit_service, client_service, deal_service, payment_service, permission_service
from printcrm.services import deal_workflow as wf
from printcrm.services.permission_service import PermissionDeniedError
from printcrm.validation import ConflictError, NotFoundError, ValidationError


@pytest.fixture
def scoped_manager(other_manager):
    """A manager who only sees clients assigned to them."""
    permission_service.set_override(
        user_id=other_manager.id,
        permission_code="view_all_clients",
        override_type="DENY",
    )
    db.session.commit()
    return other_manager


@pytest.fixture
def contract(customer, users):
    return client_service.create_contract(
        patch={"client_id": customer.id, "contract_number": "C-2026-001", "start_date": date(2026, 1, 1)},
        user=users["MANAGER"],
    )


# ============================================================================
# VISIBILITY
# ============================================================================

class TestClientVisibility:

    def test_manager_with_view_all_sees_every_client(self, customer, other_manager):
        assert [c.id for c in client_service.list_clients(other_manager)] == [customer.id]

    def test_scoped_manager_sees_own_clients_only(self, customer, scoped_manager):
        own = client_service.create_client(patch={"company_name": "Own Co"}, user=scoped_manager)

        assert [c.id for c in client_service.list_clients(scoped_manager)] == [own.id]
        with pytest.raises(NotFoundError):
            client_service.get_client(customer.id, scoped_manager)

    def test_scoped_manager_cannot_see_foreign_contracts(self, contract, scoped_manager):
        assert client_service.list_contracts(scoped_manager) == []
        with pytest.raises(NotFoundError):
            client_service.get_contract(contract.id, scoped_manager)

    def test_archived_clients_hidden_by_default(self, customer, users):
        client_service.archive_client(client_id=customer.id, user=users["ADMIN"])

        assert client_service.list_clients(users["ADMIN"]) == []
        assert len(client_service.list_clients(users["ADMIN"], include_archived=True)) == 1

    def test_search(self, customer, users):
        client_service.create_client(patch={"company_name": "Zeta Labels"}, user=users["MANAGER"])
        found = client_service.list_clients(users["MANAGER"], search="acme")
        assert [c.id for c in found] == [customer.id]


# ============================================================================
# MANAGER ASSIGNMENT AND ARCHIVE
# ============================================================================

class TestClientManagement:

    def test_manager_defaults_to_creator(self, customer, users):
        assert customer.manager_id == users["MANAGER"].id

    def test_operator_assigns_manager(self, users):
        client = client_service.create_client(
            patch={"company_name": "Lead Ltd", "manager_id": users["MANAGER"].id},
            user=users["OPERATOR"],
        )
        assert client.manager_id == users["MANAGER"].id

    def test_manager_cannot_assign_someone_else(self, users, other_manager):
        with pytest.raises(PermissionDeniedError):
            client_service.create_client(
                patch={"company_name": "Lead Ltd", "manager_id": other_manager.id},
                user=users["MANAGER"],
            )

    def test_reassignment_is_admin_only(self, customer, users, other_manager):
        with pytest.raises(PermissionDeniedError):
            client_service.update_client(
                client_id=customer.id, patch={"manager_id": other_manager.id}, user=users["MANAGER"],
            )

        client_service.update_client(client_id=customer.id, patch={"manager_id": other_manager.id}, user=users["ADMIN"])
        assert db.session.get(Client, customer.id).manager_id == other_manager.id

    def test_archive_is_admin_only_and_one_way(self, customer, users):
        with pytest.raises(PermissionDeniedError):
            client_service.archive_client(client_id=customer.id, user=users["MANAGER"])

        client_service.archive_client(client_id=customer.id, user=users["ADMIN"])
        with pytest.raises(ConflictError):
            client_service.archive_client(client_id=customer.id, user=users["ADMIN"])


# ============================================================================
# CONTRACTS
# ============================================================================

class TestContracts:

    def test_duplicate_number_conflicts(self, contract, customer, users):
        with pytest.raises(ConflictError):
            client_service.create_contract(
                patch={"client_id": customer.id, "contract_number": "C-2026-001", "start_date": date(2026, 2, 1)},
                user=users["MANAGER"],
            )

    def test_end_before_start_rejected(self, customer, users):
        with pytest.raises(ValidationError):
            client_service.create_contract(
                patch={
                    "client_id": customer.id,
                    "contract_number": "C-2",
                    "start_date": date(2026, 2, 1),
                    "end_date": date(2026, 1, 1),
                },
                user=users["MANAGER"],
            )

    def test_archived_client_takes_no_contracts(self, customer, users):
        client_service.archive_client(client_id=customer.id, user=users["ADMIN"])
        with pytest.raises(ValidationError):
            client_service.create_contract(
                patch={"client_id": customer.id, "contract_number": "C-3", "start_date": date(2026, 1, 1)},
                user=users["ADMIN"],
            )

    def test_totals_exclude_canceled_deals(self, contract, deal_at, users):
        manager = users["MANAGER"]
        approved = deal_at(wf.FINANCE_APPROVED, quantities=(10,), price_cents=1000)
        canceled = deal_at(wf.CANCELED)
        for deal in (approved, canceled):
            deal_service.update_deal(deal_id=deal.id, user=manager, payload={"contract_id": contract.id})
        payment_service.record_payment(deal_id=approved.id, user=users["ACCOUNTANT"], amount_cents=4000)

        data = client_service.get_contract(contract.id, manager)
        assert data["deals_count"] == 1
        assert data["total_amount_cents"] == 10000
        assert data["total_paid_cents"] == 4000
        assert data["remaining_cents"] == 6000
        assert len(data["deals"]) == 2

    def test_update_contract(self, contract, users):
        updated = client_service.update_contract(
            contract_id=contract.id,
            patch={"contract_number": "C-2026-001A", "end_date": date(2026, 12, 31), "is_active": False},
            user=users["MANAGER"],
        )

        assert updated.contract_number == "C-2026-001A"
        assert updated.is_active is False
        entry = (
            db.session.query(AuditLog)
            .filter_by(entity_type=audit_service.ENTITY_CONTRACT, entity_id=contract.id, action="UPDATE")
            .one()
        )
        assert entry.before["contract_number"] == "C-2026-001"
        assert entry.after["contract_number"] == "C-2026-001A"

    def test_update_contract_number_conflicts(self, contract, customer, users):
        client_service.create_contract(
            patch={"client_id": customer.id, "contract_number": "C-7", "start_date": date(2026, 1, 1)},
            user=users["MANAGER"],
        )
        with pytest.raises(ConflictError):
            client_service.update_contract(
                contract_id=contract.id, patch={"contract_number": "C-7"}, user=users["MANAGER"],
            )

    def test_update_contract_checks_dates_against_stored_values(self, contract, users):
        with pytest.raises(ValidationError):
            client_service.update_contract(
                contract_id=contract.id, patch={"end_date": date(2025, 12, 31)}, user=users["MANAGER"],
            )

    def test_contract_cannot_change_client(self, contract, users):
        other = client_service.create_client(patch={"company_name": "Other Co"}, user=users["MANAGER"])
        with pytest.raises(ValidationError):
            client_service.update_contract(
                contract_id=contract.id, patch={"client_id": other.id}, user=users["MANAGER"],
            )

    def test_scoped_manager_cannot_update_foreign_contract(self, contract, scoped_manager):
        with pytest.raises(NotFoundError):
            client_service.update_contract(
                contract_id=contract.id, patch={"notes": "mine now"}, user=scoped_manager,
            )

    def test_contract_of_another_client_is_rejected(self, contract, new_deal, users):
        other = client_service.create_client(patch={"company_name": "Other Co"}, user=users["MANAGER"])
        foreign = client_service.create_contract(
            patch={"client_id": other.id, "contract_number": "C-9", "start_date": date(2026, 1, 1)},
            user=users["MANAGER"],
        )
        deal = new_deal()
        with pytest.raises(NotFoundError):
            deal_service.update_deal(deal_id=deal.id, user=users["MANAGER"], payload={"contract_id": foreign.id})


# ============================================================================
# HISTORY AND PAYMENTS
# ============================================================================

class TestClientActivity:

    def test_history_lists_client_audit_newest_first(self, customer, users, other_manager):
        client_service.update_client(client_id=customer.id, patch={"phone": "+100"}, user=users["MANAGER"])
        client_service.archive_client(client_id=customer.id, user=users["ADMIN"])

        history = client_service.get_client_history(customer.id, users["MANAGER"])
        assert [e.action for e in history] == ["ARCHIVE", "UPDATE", "CREATE"]
        assert all(e.entity_type == audit_service.ENTITY_CLIENT for e in history)

    def test_history_hidden_from_scoped_manager(self, customer, scoped_manager):
        with pytest.raises(NotFoundError):
            client_service.get_client_history(customer.id, scoped_manager)

    def test_payments_span_the_client_deals(self, deal_at, customer, users):
        accountant = users["ACCOUNTANT"]
        first = deal_at(wf.FINANCE_APPROVED, quantities=(10,), price_cents=1000)
        second = deal_at(wf.FINANCE_APPROVED, quantities=(5,), price_cents=1000)
        paid = payment_service.record_payment(deal_id=first.id, user=accountant, amount_cents=3000)
        payment_service.record_payment(deal_id=second.id, user=accountant, amount_cents=5000)
        payment_service.reverse_payment(payment_id=paid.id, user=accountant, reason="Bank returned it")

        rows = client_service.list_client_payments(customer.id, users["MANAGER"])

        assert len(rows) == 3
        assert {row["deal"]["id"] for row in rows} == {first.id, second.id}
        assert sorted(row["amount_cents"] for row in rows) == [-3000, 3000, 5000]
        assert sum(row["amount_cents"] for row in rows) == 5000
        assert all(row["client_id"] == customer.id for row in rows)

    def test_client_without_payments(self, customer, users):
        assert client_service.list_client_payments(customer.id, users["MANAGER"]) == []


# ============================================================================
# API
# ============================================================================

@pytest.mark.api
class TestClientApi:

    def test_create_and_get(self, client, headers):
        resp = client.post("/api/clients", json={"company_name": "Print Hub"}, headers=headers("OPERATOR"))
        assert resp.status_code == 201
        client_id = resp.get_json()["client"]["id"]

        resp = client.get(f"/api/clients/{client_id}", headers=headers("MANAGER"))
        assert resp.status_code == 200
        assert resp.get_json()["client"]["company_name"] == "Print Hub"

    def test_warehouse_cannot_create_clients(self, client, headers):
        resp = client.post("/api/clients", json={"company_name": "Print Hub"}, headers=headers("WAREHOUSE"))
        assert resp.status_code == 403

    def test_archive_by_manager_is_403(self, client, headers, customer):
        resp = client.post(f"/api/clients/{customer.id}/archive", headers=headers("MANAGER"))
        assert resp.status_code == 403

    def test_contract_create_and_duplicate(self, client, headers, customer):
        body = {"client_id": customer.id, "contract_number": "C-100", "start_date": "2026-01-01"}
        assert client.post("/api/contracts", json=body, headers=headers("MANAGER")).status_code == 201
        assert client.post("/api/contracts", json=body, headers=headers("MANAGER")).status_code == 409

        resp = client.get(f"/api/contracts?client_id={customer.id}", headers=headers("MANAGER"))
        assert resp.status_code == 200
        (row,) = resp.get_json()["contracts"]
        assert row["contract_number"] == "C-100"
        assert row["deals_count"] == 0

    def test_update_contract_route(self, client, headers, contract):
        resp = client.put(f"/api/contracts/{contract.id}", json={"notes": "renewed"}, headers=headers("MANAGER"))
        assert resp.status_code == 200
        assert resp.get_json()["contract"]["notes"] == "renewed"

        assert client.put(f"/api/contracts/{contract.id}", json={}, headers=headers("MANAGER")).status_code == 400
        assert client.put(
            f"/api/contracts/{contract.id}", json={"notes": "x"}, headers=headers("WAREHOUSE")
        ).status_code == 403
        assert client.put("/api/contracts/999", json={"notes": "x"}, headers=headers("MANAGER")).status_code == 404

    def test_history_and_payments_routes(self, client, headers, customer):
        resp = client.get(f"/api/clients/{customer.id}/history", headers=headers("MANAGER"))
        assert resp.status_code == 200
        assert [row["action"] for row in resp.get_json()["history"]] == ["CREATE"]

        resp = client.get(f"/api/clients/{customer.id}/payments", headers=headers("ACCOUNTANT"))
        assert resp.status_code == 200
        assert resp.get_json()["payments"] == []

        assert client.get("/api/clients/999/history", headers=headers("MANAGER")).status_code == 404

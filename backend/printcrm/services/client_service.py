"""
Client & Contract Registry

Clients are scoped to their manager: a user without view_all_clients (and
outside the unscoped roles) only sees and edits clients they manage.
Invisible clients are reported as not found.
"""
from __future__ import annotations

from sqlalchemy import func

from ..extensions import db
from ..models import Client, Contract, Deal, Payment, User
from ..permissions import CLIENT_ASSIGNER_ROLES
from ..validation import ConflictError, NotFoundError, ValidationError, enforce_rules_contract
from . import audit_service
from .concurrency import lock_for_update, run_with_retry
from .permission_service import PermissionDeniedError, can_view_all_clients, is_full_access

CLIENT_MUTABLE_FIELDS = {"company_name", "contact_name", "phone", "email", "address", "notes", "manager_id"}
CONTRACT_MUTABLE_FIELDS = {"client_id", "contract_number", "start_date", "end_date", "is_active", "notes"}


def _scoped_clients(user: User):
    q = db.session.query(Client)
    if not can_view_all_clients(user):
        q = q.filter(Client.manager_id == user.id)
    return q


def _require_active_manager(manager_id: int) -> User:
    manager = db.session.get(User, manager_id)
    if manager is None or not manager.is_active:
        raise NotFoundError(f"Manager {manager_id} not found or inactive")
    return manager


def _snapshot(client: Client) -> dict:
    return {k: getattr(client, k) for k in sorted(CLIENT_MUTABLE_FIELDS)}


def list_clients(user: User, *, include_archived: bool = False, search: str | None = None) -> list[Client]:
    q = _scoped_clients(user)
    if not include_archived:
        q = q.filter(Client.is_archived.is_(False))
    if search:
        like = f"%{search.strip()}%"
        q = q.filter(db.or_(Client.company_name.ilike(like), Client.contact_name.ilike(like)))
    return q.order_by(Client.created_at.desc(), Client.id.desc()).all()


def get_client(client_id: int, user: User) -> Client:
    client = _scoped_clients(user).filter(Client.id == client_id).first()
    if client is None:
        raise NotFoundError(f"Client {client_id} not found")
    return client


def create_client(*, patch: dict, user: User) -> Client:
    """
    Create a client. The manager defaults to the caller; assigning someone
    else requires an admin or operator role.
    """
    def _op():
        manager_id = user.id
        if patch.get("manager_id") is not None and patch["manager_id"] != user.id:
            if user.role not in CLIENT_ASSIGNER_ROLES:
                raise PermissionDeniedError("Only administrators and operators can assign a manager")
            manager_id = _require_active_manager(patch["manager_id"]).id

        client = Client(manager_id=manager_id, is_archived=False)
        for k, v in patch.items():
            if k in CLIENT_MUTABLE_FIELDS and k != "manager_id":
                setattr(client, k, v)
        db.session.add(client)
        db.session.flush()

        audit_service.record(
            user_id=user.id,
            action="CREATE",
            entity_type=audit_service.ENTITY_CLIENT,
            entity_id=client.id,
            after={"company_name": client.company_name, "contact_name": client.contact_name},
        )
        db.session.commit()
        return client

    return run_with_retry(_op)


def update_client(*, client_id: int, patch: dict, user: User) -> Client:
    def _op():
        client = lock_for_update(_scoped_clients(user).filter(Client.id == client_id)).first()
        if client is None:
            raise NotFoundError(f"Client {client_id} not found")

        if "manager_id" in patch and patch["manager_id"] != client.manager_id:
            if not is_full_access(user):
                raise PermissionDeniedError("Only administrators can change the client's manager")
            if patch["manager_id"] is None:
                raise ValidationError("manager_id cannot be null")
            _require_active_manager(patch["manager_id"])

        before = _snapshot(client)
        for k, v in patch.items():
            if k in CLIENT_MUTABLE_FIELDS:
                setattr(client, k, v)

        audit_service.record(
            user_id=user.id,
            action="UPDATE",
            entity_type=audit_service.ENTITY_CLIENT,
            entity_id=client.id,
            before=before,
            after=_snapshot(client),
        )
        db.session.commit()
        return client

    return run_with_retry(_op)


def archive_client(*, client_id: int, user: User) -> Client:
    """Administrators only. Archiving is one-way."""
    if not is_full_access(user):
        raise PermissionDeniedError("Only administrators can archive clients")

    def _op():
        client = lock_for_update(db.session.query(Client).filter(Client.id == client_id)).first()
        if client is None:
            raise NotFoundError(f"Client {client_id} not found")
        if client.is_archived:
            raise ConflictError(f"Client {client_id} is already archived")

        client.is_archived = True
        audit_service.record(
            user_id=user.id,
            action="ARCHIVE",
            entity_type=audit_service.ENTITY_CLIENT,
            entity_id=client.id,
            before={"is_archived": False},
            after={"is_archived": True},
        )
        db.session.commit()
        return client

    return run_with_retry(_op)


def get_client_history(client_id: int, user: User) -> list:
    """Audit entries of a visible client, newest first."""
    client = get_client(client_id, user)
    return audit_service.list_for_entity(audit_service.ENTITY_CLIENT, client.id)


def list_client_payments(client_id: int, user: User) -> list[dict]:
    """Payment ledger rows across all deals of a visible client, latest paid_at first."""
    client = get_client(client_id, user)
    payments = (
        db.session.query(Payment)
        .filter(Payment.client_id == client.id)
        .order_by(Payment.paid_at.desc(), Payment.id.desc())
        .all()
    )
    result = []
    for payment in payments:
        data = payment.to_dict()
        data["deal"] = {"id": payment.deal.id, "title": payment.deal.title}
        result.append(data)
    return result


# =============================================================================
# CONTRACTS
# =============================================================================

def _contract_totals(contract_ids: list[int]) -> dict[int, dict]:
    if not contract_ids:
        return {}
    rows = (
        db.session.query(
            Deal.contract_id,
            func.count(Deal.id),
            func.coalesce(func.sum(Deal.amount_cents), 0),
            func.coalesce(func.sum(Deal.paid_amount_cents), 0),
        )
        .filter(Deal.contract_id.in_(contract_ids), Deal.status != "CANCELED")
        .group_by(Deal.contract_id)
        .all()
    )
    totals = {}
    for contract_id, count, amount, paid in rows:
        totals[contract_id] = {
            "deals_count": int(count),
            "total_amount_cents": int(amount),
            "total_paid_cents": int(paid),
            "remaining_cents": int(amount) - int(paid),
        }
    return totals


def _empty_totals() -> dict:
    return {"deals_count": 0, "total_amount_cents": 0, "total_paid_cents": 0, "remaining_cents": 0}


def list_contracts(user: User, *, client_id: int | None = None) -> list[dict]:
    """Contracts of visible clients, each with deal totals (canceled deals excluded)."""
    q = db.session.query(Contract).join(Client, Contract.client_id == Client.id)
    if not can_view_all_clients(user):
        q = q.filter(Client.manager_id == user.id)
    if client_id is not None:
        q = q.filter(Contract.client_id == client_id)
    contracts = q.order_by(Contract.created_at.desc(), Contract.id.desc()).all()

    totals = _contract_totals([c.id for c in contracts])
    result = []
    for contract in contracts:
        data = contract.to_dict()
        data["client"] = contract.client.to_ref()
        data.update(totals.get(contract.id, _empty_totals()))
        result.append(data)
    return result


def get_contract(contract_id: int, user: User) -> dict:
    contract = db.session.get(Contract, contract_id)
    if contract is None:
        raise NotFoundError(f"Contract {contract_id} not found")
    # Visibility follows the owning client
    get_client(contract.client_id, user)

    data = contract.to_dict()
    data["client"] = contract.client.to_ref()
    data.update(_contract_totals([contract.id]).get(contract.id, _empty_totals()))
    data["deals"] = [
        d.to_dict(include_items=False)
        for d in contract.deals.order_by(Deal.created_at.desc(), Deal.id.desc()).all()
    ]
    return data


def create_contract(*, patch: dict, user: User) -> Contract:
    enforce_rules_contract(patch)

    def _op():
        client = get_client(patch["client_id"], user)
        if client.is_archived:
            raise ValidationError("Cannot add a contract to an archived client")

        existing = db.session.query(Contract).filter_by(contract_number=patch["contract_number"]).first()
        if existing:
            raise ConflictError(f"Contract number '{patch['contract_number']}' already exists")

        contract = Contract(is_active=True)
        for k, v in patch.items():
            if k in CONTRACT_MUTABLE_FIELDS:
                setattr(contract, k, v)
        db.session.add(contract)
        db.session.flush()

        audit_service.record(
            user_id=user.id,
            action="CREATE",
            entity_type=audit_service.ENTITY_CONTRACT,
            entity_id=contract.id,
            after={"contract_number": contract.contract_number, "client_id": contract.client_id},
        )
        db.session.commit()
        return contract

    return run_with_retry(_op)


def _contract_snapshot(contract: Contract) -> dict:
    return {k: getattr(contract, k) for k in ("contract_number", "start_date", "end_date", "is_active", "notes")}


def update_contract(*, contract_id: int, patch: dict, user: User) -> Contract:
    """
    Patch a contract of a visible client. The owning client cannot change;
    a new contract_number must stay unique.
    """
    def _op():
        contract = lock_for_update(db.session.query(Contract).filter(Contract.id == contract_id)).first()
        if contract is None:
            raise NotFoundError(f"Contract {contract_id} not found")
        client = get_client(contract.client_id, user)
        if client.is_archived:
            raise ValidationError("Cannot change a contract of an archived client")

        if "client_id" in patch and patch["client_id"] != contract.client_id:
            raise ValidationError("A contract cannot move to another client")

        number = patch.get("contract_number")
        if number is not None and number != contract.contract_number:
            existing = db.session.query(Contract).filter_by(contract_number=number).first()
            if existing:
                raise ConflictError(f"Contract number '{number}' already exists")

        enforce_rules_contract({
            "start_date": patch.get("start_date", contract.start_date),
            "end_date": patch.get("end_date", contract.end_date),
        })

        before = _contract_snapshot(contract)
        for k, v in patch.items():
            if k in CONTRACT_MUTABLE_FIELDS and k != "client_id":
                setattr(contract, k, v)

        audit_service.record(
            user_id=user.id,
            action="UPDATE",
            entity_type=audit_service.ENTITY_CONTRACT,
            entity_id=contract.id,
            before=before,
            after=_contract_snapshot(contract),
        )
        db.session.commit()
        return contract

    return run_with_retry(_op)

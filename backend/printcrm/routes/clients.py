# backend/printcrm/routes/clients.py
"""
Client & contract registry routes.

SECURITY: All routes require authentication.
- Create/update clients and contracts: manage_leads or manage_deals
- Client history and payments: any user who can see the client
- Archive a client: administrators only (enforced by client_service)
- Users without view_all_clients only see clients they manage; others answer 404
"""
from flask import Blueprint, request, jsonify, g

from ..services import client_service
from ..models import Client, Contract
from ..validation import (
    CLIENT_POLICY,
    CONTRACT_POLICY,
    validate_payload,
    ValidationError,
)
from ..decorators import require_auth, require_any_permission, handle_domain_errors


clients_bp = Blueprint("clients", __name__, url_prefix="/api/clients")
contracts_bp = Blueprint("contracts", __name__, url_prefix="/api/contracts")


def _flag(name: str) -> bool:
    return request.args.get(name, "").lower() in ("1", "true", "yes")


# =============================================================================
# CLIENTS
# =============================================================================

@clients_bp.get("")
@require_auth
@handle_domain_errors("Failed to list clients")
def list_clients_route():
    """Query params: include_archived, search."""
    clients = client_service.list_clients(
        g.current_user,
        include_archived=_flag("include_archived"),
        search=request.args.get("search") or None,
    )
    return jsonify({"clients": [c.to_dict() for c in clients]}), 200


@clients_bp.post("")
@require_auth
@require_any_permission("manage_leads", "manage_deals")
@handle_domain_errors("Failed to create client")
def create_client_route():
    """
    Request body:
    {
        "company_name": "Acme Print",
        "contact_name": "...", "phone": "...", "email": "...",
        "address": "...", "notes": "...",
        "manager_id": 3              (optional, admins and operators only)
    }
    """
    patch = validate_payload(
        model=Client,
        payload=request.get_json(silent=True) or {},
        policy=CLIENT_POLICY,
        partial=False,
    )
    client = client_service.create_client(patch=patch, user=g.current_user)
    return jsonify({"client": client.to_dict()}), 201


@clients_bp.get("/<int:client_id>")
@require_auth
@handle_domain_errors("Failed to get client")
def get_client_route(client_id: int):
    client = client_service.get_client(client_id, g.current_user)
    data = client.to_dict()
    data["contracts"] = [c.to_dict() for c in client.contracts]
    return jsonify({"client": data}), 200


@clients_bp.put("/<int:client_id>")
@require_auth
@require_any_permission("manage_leads", "manage_deals")
@handle_domain_errors("Failed to update client")
def update_client_route(client_id: int):
    patch = validate_payload(
        model=Client,
        payload=request.get_json(silent=True) or {},
        policy=CLIENT_POLICY,
        partial=True,
    )
    if not patch:
        raise ValidationError("No fields to update")
    client = client_service.update_client(client_id=client_id, patch=patch, user=g.current_user)
    return jsonify({"client": client.to_dict()}), 200


@clients_bp.post("/<int:client_id>/archive")
@require_auth
@handle_domain_errors("Failed to archive client")
def archive_client_route(client_id: int):
    client = client_service.archive_client(client_id=client_id, user=g.current_user)
    return jsonify({"client": client.to_dict()}), 200


@clients_bp.get("/<int:client_id>/history")
@require_auth
@handle_domain_errors("Failed to get client history")
def client_history_route(client_id: int):
    entries = client_service.get_client_history(client_id, g.current_user)
    return jsonify({"history": [e.to_dict() for e in entries]}), 200


@clients_bp.get("/<int:client_id>/payments")
@require_auth
@handle_domain_errors("Failed to list client payments")
def client_payments_route(client_id: int):
    """Payments and reversals across the client's deals, each with its deal reference."""
    payments = client_service.list_client_payments(client_id, g.current_user)
    return jsonify({"payments": payments}), 200


# =============================================================================
# CONTRACTS
# =============================================================================

@contracts_bp.get("")
@require_auth
@handle_domain_errors("Failed to list contracts")
def list_contracts_route():
    """Query param: client_id (optional). Each contract carries its deal totals."""
    contracts = client_service.list_contracts(
        g.current_user,
        client_id=request.args.get("client_id", type=int),
    )
    return jsonify({"contracts": contracts}), 200


@contracts_bp.post("")
@require_auth
@require_any_permission("manage_leads", "manage_deals")
@handle_domain_errors("Failed to create contract")
def create_contract_route():
    """
    Request body:
    {
        "client_id": 1,
        "contract_number": "C-2026-001",   (unique)
        "start_date": "2026-01-01",
        "end_date": "2026-12-31",          (optional)
        "notes": "..."
    }
    """
    patch = validate_payload(
        model=Contract,
        payload=request.get_json(silent=True) or {},
        policy=CONTRACT_POLICY,
        partial=False,
    )
    contract = client_service.create_contract(patch=patch, user=g.current_user)
    return jsonify({"contract": contract.to_dict()}), 201


@contracts_bp.get("/<int:contract_id>")
@require_auth
@handle_domain_errors("Failed to get contract")
def get_contract_route(contract_id: int):
    return jsonify({"contract": client_service.get_contract(contract_id, g.current_user)}), 200


@contracts_bp.put("/<int:contract_id>")
@require_auth
@require_any_permission("manage_leads", "manage_deals")
@handle_domain_errors("Failed to update contract")
def update_contract_route(contract_id: int):
    """Any of contract_number, start_date, end_date, is_active, notes."""
    patch = validate_payload(
        model=Contract,
        payload=request.get_json(silent=True) or {},
        policy=CONTRACT_POLICY,
        partial=True,
    )
    if not patch:
        raise ValidationError("No fields to update")
    contract = client_service.update_contract(contract_id=contract_id, patch=patch, user=g.current_user)
    return jsonify({"contract": contract.to_dict()}), 200

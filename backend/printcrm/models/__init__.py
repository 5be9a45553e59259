from .users import User, UserPermissionOverride, SessionToken
from .inventory import Product, InventoryMovement
from .clients import Client, Contract
from .deals import Deal, DealItem, DealComment, Shipment
from .payments import Payment
from .audit import AuditLog

__all__ = [
    "User",
    "UserPermissionOverride",
    "SessionToken",
    "Product",
    "InventoryMovement",
    "Client",
    "Contract",
    "Deal",
    "DealItem",
    "DealComment",
    "Shipment",
    "Payment",
    "AuditLog",
]

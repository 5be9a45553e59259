"""
Permission codes and role defaults.

WHY: One place lists every permission code the workflow checks, and the
default grant set for each role. Per-user overrides (GRANT/DENY) are
applied on top of these defaults by permission_service.

DESIGN PRINCIPLES:
- One permission per workflow edge family (stock, finance, admin, shipment)
- SUPER_ADMIN and ADMIN hold every permission
- Other roles get the least they need for their queue
"""

# =============================================================================
# PERMISSION CATEGORIES
# =============================================================================

class PermissionCategory:
    USERS = "USERS"
    DEALS = "DEALS"
    WORKFLOW = "WORKFLOW"
    INVENTORY = "INVENTORY"
    CLIENTS = "CLIENTS"


# =============================================================================
# PERMISSION DEFINITIONS
# =============================================================================

# (code, name, description, category)
PERMISSION_DEFINITIONS = [
    ("manage_users", "Manage Users", "Create users and change permission overrides", PermissionCategory.USERS),

    ("view_all_deals", "View All Deals", "See deals managed by other users", PermissionCategory.DEALS),
    ("manage_deals", "Manage Deals", "Create, edit, start, cancel and rework deals", PermissionCategory.DEALS),
    ("manage_leads", "Manage Leads", "Work with incoming leads", PermissionCategory.DEALS),
    ("close_deals", "Close Deals", "Close shipped deals", PermissionCategory.DEALS),
    ("archive_deals", "Archive Deals", "Archive deals", PermissionCategory.DEALS),

    ("stock_confirm", "Confirm Stock", "Answer stock confirmation requests", PermissionCategory.WORKFLOW),
    ("finance_approve", "Finance Approval", "Approve or reject priced deals", PermissionCategory.WORKFLOW),
    ("admin_approve", "Admin Approval", "Give final approval and release for shipment", PermissionCategory.WORKFLOW),
    ("confirm_shipment", "Confirm Shipment", "Ship, hold and release deals", PermissionCategory.WORKFLOW),

    ("manage_inventory", "Manage Inventory", "Post manual stock receipts and write-offs", PermissionCategory.INVENTORY),
    ("manage_products", "Manage Products", "Create and edit catalog products", PermissionCategory.INVENTORY),

    ("view_all_clients", "View All Clients", "See clients managed by other users", PermissionCategory.CLIENTS),
]

ALL_PERMISSION_CODES = frozenset(code for code, _, _, _ in PERMISSION_DEFINITIONS)


# =============================================================================
# DEFAULT ROLE PERMISSIONS
# =============================================================================

# Roles that hold every permission regardless of overrides
FULL_ACCESS_ROLES = frozenset({"SUPER_ADMIN", "ADMIN"})

DEFAULT_ROLE_PERMISSIONS = {
    "SUPER_ADMIN": sorted(ALL_PERMISSION_CODES),
    "ADMIN": sorted(ALL_PERMISSION_CODES),
    "OPERATOR": [
        "manage_leads",
        "view_all_clients",
    ],
    "MANAGER": [
        "manage_deals",
        "manage_inventory",
        "view_all_clients",
    ],
    "ACCOUNTANT": [
        "finance_approve",
        "view_all_deals",
    ],
    "WAREHOUSE": [
        "stock_confirm",
        "manage_inventory",
        "view_all_deals",
    ],
    "WAREHOUSE_MANAGER": [
        "stock_confirm",
        "confirm_shipment",
        "manage_inventory",
        "view_all_deals",
    ],
}

# Roles allowed to assign a client to a manager other than themselves
CLIENT_ASSIGNER_ROLES = frozenset({"SUPER_ADMIN", "ADMIN", "OPERATOR"})

# Roles that see every deal and client regardless of manager ownership
UNSCOPED_ROLES = frozenset({"SUPER_ADMIN", "ADMIN", "ACCOUNTANT", "WAREHOUSE", "WAREHOUSE_MANAGER"})

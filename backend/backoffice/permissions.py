# Overview: Permission codes and default role bundles.
# Each permission is defined as: (code, name, description, category)

INVENTORY_PERMISSIONS = [
    ("inventory.view", "View Inventory", "View stock balances, movements and low-stock lists", "INVENTORY"),
    ("inventory.in", "Stock In", "Post IN and RETURN movements", "INVENTORY"),
    ("inventory.out", "Stock Out", "Post OUT, RESERVE and RELEASE movements", "INVENTORY"),
    ("inventory.adjust", "Adjust Stock", "Post manual ADJUST corrections (note required)", "INVENTORY"),
]

PURCHASE_PERMISSIONS = [
    ("purchase.view", "View Purchase Orders", "View purchase orders and AP reports", "PURCHASING"),
    ("purchase.create", "Create Purchase Orders", "Create purchase orders", "PURCHASING"),
    ("purchase.update", "Update Purchase Orders", "Edit purchase orders and move them through their lifecycle", "PURCHASING"),
    ("purchase.settle", "Settle Purchase Orders", "Record and reverse AP payments", "PURCHASING"),
]

AUDIT_PERMISSIONS = [
    ("audit.view", "View Audit Trail", "View audit events for the store", "SYSTEM"),
]

PERMISSION_DEFINITIONS = INVENTORY_PERMISSIONS + PURCHASE_PERMISSIONS + AUDIT_PERMISSIONS


DEFAULT_ROLE_PERMISSIONS = {
    "admin": [code for code, _, _, _ in PERMISSION_DEFINITIONS],
    "manager": [
        "inventory.view", "inventory.in", "inventory.out", "inventory.adjust",
        "purchase.view", "purchase.create", "purchase.update",
    ],
    "clerk": ["inventory.view", "inventory.in", "inventory.out", "purchase.view"],
    "viewer": ["inventory.view", "purchase.view"],
}


def get_all_permission_codes() -> set[str]:
    return {code for code, _, _, _ in PERMISSION_DEFINITIONS}


def validate_permission_code(code: str) -> bool:
    return code in get_all_permission_codes()

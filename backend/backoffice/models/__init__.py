from .tenancy import Store
from .auth import User, UserPermission, SessionToken
from .inventory import Unit, Product, ProductUnit, InventoryMovement
from .purchases import PurchaseOrder, PurchaseOrderItem, PurchaseOrderPayment
from .documents import DocumentSequence
from .idempotency import IdempotencyRequest
from .audit import AuditEvent

__all__ = [
    'Store',
    'User', 'UserPermission', 'SessionToken',
    'Unit', 'Product', 'ProductUnit', 'InventoryMovement',
    'PurchaseOrder', 'PurchaseOrderItem', 'PurchaseOrderPayment',
    'DocumentSequence',
    'IdempotencyRequest',
    'AuditEvent',
]

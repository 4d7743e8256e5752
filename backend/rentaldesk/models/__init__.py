from .tenancy import Branch
from .auth import Staff, SessionToken, ROLES
from .customers import Customer
from .orders import Order, OrderItem, ORDER_STATUSES, ITEM_RETURN_STATUSES
from .audit import OrderAuditEvent
from .documents import DocumentSequence

__all__ = [
    'Branch',
    'Staff', 'SessionToken', 'ROLES',
    'Customer',
    'Order', 'OrderItem', 'ORDER_STATUSES', 'ITEM_RETURN_STATUSES',
    'OrderAuditEvent',
    'DocumentSequence',
]

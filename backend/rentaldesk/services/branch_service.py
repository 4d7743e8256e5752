"""
Branch Scoping Helpers

Branch validation shared by services and routes.
Every order belongs to one branch and staff may only touch their own
branch's orders; super admins (branch_id=None) may act on any branch.

SECURITY INVARIANTS:
1. Every authenticated request has g.branch_id set (None for super admins)
2. Orders outside the caller's branch answer NotFound, never revealing existence
3. Branch ids from client input are validated before use

USAGE:
    from rentaldesk.services.branch_service import get_order_in_branch

    order = get_order_in_branch(order_id, g.branch_id)
"""

from ..errors import NotFound, ValidationFailed
from ..extensions import db
from ..models import Branch, Customer, Order
from .concurrency import lock_for_update


def require_branch(branch_id: int) -> Branch:
    branch = db.session.get(Branch, branch_id)
    if not branch or not branch.is_active:
        raise NotFound("Branch not found")
    return branch


def resolve_branch_id(scope_branch_id: int | None, requested_branch_id: int | None) -> int:
    """
    Pick the branch a request acts on.

    Branch staff always act on their own branch; a super admin must name one.
    """
    if scope_branch_id is not None:
        if requested_branch_id is not None and requested_branch_id != scope_branch_id:
            raise NotFound("Branch not found")
        return scope_branch_id
    if requested_branch_id is None:
        raise ValidationFailed("branch_id is required", field="branch_id")
    require_branch(requested_branch_id)
    return requested_branch_id


def get_order_in_branch(order_id: int, scope_branch_id: int | None, *, lock: bool = False) -> Order:
    """
    Load an order visible to the caller.

    scope_branch_id=None means unrestricted (super admin, system jobs).
    lock=True takes a row lock for the rest of the transaction.
    """
    query = db.session.query(Order).filter(Order.id == order_id)
    if scope_branch_id is not None:
        query = query.filter(Order.branch_id == scope_branch_id)
    if lock:
        query = lock_for_update(query)
    order = query.first()
    if not order:
        raise NotFound(f"Order {order_id} not found")
    return order


def get_customer_in_branch(customer_id: int, branch_id: int) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if not customer or customer.branch_id != branch_id:
        raise ValidationFailed("Customer not found in this branch", field="customer_id")
    return customer

import logging
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from .. import errors, models, schemas
from ..config import DELIVERY_FEE_CENTS
from ..errors import operation
from ..models import ItemSize, OrderChannel, OrderStatus, PaymentStatus, utcnow
from ..permissions import Actor, require
from . import sessions, stock

logger = logging.getLogger(__name__)

# (current, next) -> permission required for the move. Pairs not listed are
# not reachable.
TRANSITIONS = {
    (OrderStatus.pending, OrderStatus.confirmed): "ORDERS_ADVANCE",
    (OrderStatus.confirmed, OrderStatus.preparing): "KITCHEN_ACCESS",
    (OrderStatus.preparing, OrderStatus.ready): "KITCHEN_ACCESS",
    (OrderStatus.ready, OrderStatus.completed): "ORDERS_COMPLETE",
    (OrderStatus.pending, OrderStatus.cancelled): "ORDERS_CANCEL",
    (OrderStatus.confirmed, OrderStatus.cancelled): "ORDERS_CANCEL_CONFIRMED",
    (OrderStatus.preparing, OrderStatus.cancelled): "ORDERS_CANCEL_CONFIRMED",
    (OrderStatus.ready, OrderStatus.cancelled): "ORDERS_CANCEL_CONFIRMED",
}

TERMINAL_STATUSES = frozenset({OrderStatus.completed, OrderStatus.cancelled})
KITCHEN_STATUSES = (OrderStatus.confirmed, OrderStatus.preparing, OrderStatus.ready)

STATUS_TIMESTAMPS = {
    OrderStatus.confirmed: "confirmed_at",
    OrderStatus.ready: "ready_at",
    OrderStatus.completed: "completed_at",
    OrderStatus.cancelled: "cancelled_at",
}


def allowed_next(status: OrderStatus) -> List[OrderStatus]:
    return [target for (source, target) in TRANSITIONS if source == status]


def price_lines(
    db: Session, items_in: Sequence[schemas.OrderItemIn]
) -> Tuple[List[models.OrderItem], int]:
    """Build order lines priced from the current menu, never from the client."""
    lines = []
    subtotal = 0
    for position, item_in in enumerate(items_in):
        if item_in.quantity < 1:
            raise errors.ValidationError(
                "Quantity must be at least 1", menu_item_id=item_in.menu_item_id
            )
        menu_item = db.get(models.MenuItem, item_in.menu_item_id)
        if menu_item is None:
            raise errors.NotFound("Menu item not found", menu_item_id=item_in.menu_item_id)
        if not menu_item.is_available:
            raise errors.ValidationError(
                f"{menu_item.name} is not available", menu_item_id=menu_item.id
            )
        if item_in.size == ItemSize.small:
            if menu_item.price_small_cents is None:
                raise errors.ValidationError(
                    f"{menu_item.name} has no small size", menu_item_id=menu_item.id
                )
            unit_price = menu_item.price_small_cents
        else:
            unit_price = menu_item.price_cents
        line_total = unit_price * item_in.quantity
        subtotal += line_total
        notes = (item_in.notes or "").strip()
        lines.append(
            models.OrderItem(
                position=position,
                menu_item_id=menu_item.id,
                item_name=menu_item.name,
                size=item_in.size,
                quantity=item_in.quantity,
                unit_price_cents=unit_price,
                line_total_cents=line_total,
                notes=notes or None,
            )
        )
    return lines, subtotal


@operation
def create_order(db: Session, payload: schemas.OrderCreate, actor: Actor) -> models.Order:
    if not payload.items:
        raise errors.ValidationError("Order is empty")

    channel = payload.channel
    session = None
    table_id = None
    if payload.session_token:
        # The session token alone grants ordering rights at its table.
        session = sessions.get_session_by_token(db, payload.session_token)
        if session is None:
            raise errors.NotFound("Table session not found or closed")
        table_id = session.table_id
        channel = OrderChannel.dine_in
    elif payload.table_id is not None:
        require(actor, "POS_ACCESS")
        table = sessions.get_table(db, payload.table_id)
        if table is None:
            raise errors.NotFound("Table not found", table_id=payload.table_id)
        table_id = table.id
        channel = OrderChannel.dine_in
    elif channel == OrderChannel.dine_in:
        require(actor, "POS_ACCESS")

    address = (payload.delivery_address or "").strip()
    if channel == OrderChannel.delivery and not address:
        raise errors.ValidationError("Delivery address is required")

    lines, subtotal = price_lines(db, payload.items)
    delivery_fee = DELIVERY_FEE_CENTS if channel == OrderChannel.delivery else 0

    order = models.Order(
        session_id=session.id if session else None,
        table_id=table_id,
        customer_id=actor.user_id,
        status=OrderStatus.pending,
        channel=channel,
        client_name=(payload.client_name or "").strip() or None,
        client_phone=payload.client_phone,
        delivery_address=address or None,
        notes=payload.notes,
        subtotal_cents=subtotal,
        delivery_fee_cents=delivery_fee,
        total_cents=subtotal + delivery_fee,
        items=lines,
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    logger.info(
        "order %s created (%s, %d items, %d cents)",
        order.id,
        channel.value,
        len(lines),
        order.total_cents,
    )
    return order


def compare_and_set_status(
    db: Session, order_id: int, expected: OrderStatus, values: dict
) -> bool:
    """Write the new status only if the row still holds `expected`."""
    updated = (
        db.query(models.Order)
        .filter(models.Order.id == order_id, models.Order.status == expected)
        .update(values, synchronize_session=False)
    )
    return updated == 1


@operation
def update_order_status(
    db: Session,
    order_id: int,
    new_status: OrderStatus,
    actor: Actor,
    reason: Optional[str] = None,
) -> models.Order:
    """Move an order one step along its lifecycle.

    Reachability is checked before the caller's role. Entering `confirmed`
    consumes recipe stock inside the same transaction as the status write, so
    an InsufficientStock failure leaves both untouched.
    """
    order = db.get(models.Order, order_id)
    if order is None:
        raise errors.NotFound("Order not found", order_id=order_id)
    current = order.status

    permission = TRANSITIONS.get((current, new_status))
    if permission is None:
        raise errors.InvalidTransition(
            f"Cannot move order from {current.value} to {new_status.value}",
            current=current.value,
            requested=new_status.value,
            allowed=[status.value for status in allowed_next(current)],
        )
    require(actor, permission)

    now = utcnow()
    values = {models.Order.status: new_status, models.Order.updated_at: now}
    if new_status in STATUS_TIMESTAMPS:
        values[getattr(models.Order, STATUS_TIMESTAMPS[new_status])] = now
    if new_status == OrderStatus.cancelled:
        values[models.Order.cancellation_reason] = reason

    if not compare_and_set_status(db, order_id, current, values):
        raise errors.InvalidTransition(
            "Order status changed concurrently",
            current=current.value,
            requested=new_status.value,
        )

    if new_status == OrderStatus.confirmed:
        stock.consume_for_order(db, order, performed_by=actor.user_id)

    db.commit()
    db.refresh(order)
    logger.info(
        "order %s: %s -> %s by user %s",
        order_id,
        current.value,
        new_status.value,
        actor.user_id,
    )
    return order


@operation
def validate_payment(
    db: Session, order_id: int, method: models.PaymentMethod, actor: Actor
) -> models.Order:
    require(actor, "PAYMENT_VALIDATE")
    order = db.get(models.Order, order_id)
    if order is None:
        raise errors.NotFound("Order not found", order_id=order_id)
    if order.status == OrderStatus.cancelled:
        raise errors.InvalidTransition("Cannot take payment for a cancelled order")
    now = utcnow()
    paid = (
        db.query(models.Order)
        .filter(
            models.Order.id == order_id,
            models.Order.payment_status == PaymentStatus.unpaid,
            models.Order.status != OrderStatus.cancelled,
        )
        .update(
            {
                models.Order.payment_status: PaymentStatus.paid,
                models.Order.payment_method: method,
                models.Order.paid_at: now,
                models.Order.validated_by: actor.user_id,
                models.Order.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if paid != 1:
        raise errors.ValidationError("Order is already paid", order_id=order_id)
    db.commit()
    db.refresh(order)
    logger.info("order %s paid by %s, validated by user %s", order_id, method.value, actor.user_id)
    return order


def get_order(db: Session, order_id: int) -> Optional[models.Order]:
    return db.get(models.Order, order_id)


def list_orders(db: Session, status: Optional[OrderStatus] = None):
    query = db.query(models.Order)
    if status is not None:
        query = query.filter(models.Order.status == status)
    return query.order_by(models.Order.created_at.desc(), models.Order.id.desc()).all()


def list_session_orders(db: Session, session_id: int):
    return (
        db.query(models.Order)
        .filter(models.Order.session_id == session_id)
        .order_by(models.Order.created_at, models.Order.id)
        .all()
    )


def kitchen_board(db: Session):
    return (
        db.query(models.Order)
        .filter(models.Order.status.in_(KITCHEN_STATUSES))
        .order_by(models.Order.created_at, models.Order.id)
        .all()
    )

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import errors, models, schemas
from ..errors import operation
from ..models import MovementReason, RequestKind, RequestStatus, utcnow
from ..permissions import Actor, require

logger = logging.getLogger(__name__)

StockTarget = Union[models.Ingredient, models.StockItem]

INCREASING_REASONS = {MovementReason.restock}
DECREASING_REASONS = {MovementReason.sale, MovementReason.waste, MovementReason.withdrawal}
MANUAL_REASONS = {
    MovementReason.restock,
    MovementReason.adjustment,
    MovementReason.waste,
    MovementReason.force,
}


@dataclass
class Withdrawal:
    needs_approval: bool
    movement: Optional[models.StockMovement] = None
    request: Optional[models.IngredientRequest] = None


def _target_kind(target: StockTarget) -> str:
    return "ingredient" if isinstance(target, models.Ingredient) else "stock_item"


def _read_quantity(db: Session, model, target_id: int) -> Optional[int]:
    return db.query(model.quantity_on_hand).filter(model.id == target_id).scalar()


def apply_delta(
    db: Session,
    target: StockTarget,
    delta: int,
    reason: MovementReason,
    performed_by: Optional[int] = None,
    order_id: Optional[int] = None,
    request_id: Optional[int] = None,
    note: Optional[str] = None,
) -> models.StockMovement:
    """Move stock and append the matching ledger row. Does not commit.

    The quantity change is one conditional UPDATE that only matches while the
    result stays non-negative, so concurrent decrements cannot overdraw.
    A forced adjustment clamps at zero and logs the delta actually applied.
    """
    model = type(target)
    target_id = target.id
    column = model.quantity_on_hand

    if reason == MovementReason.force:
        previous = (
            db.query(column).filter(model.id == target_id).with_for_update().scalar()
        )
        new = max(previous + delta, 0)
        db.query(model).filter(model.id == target_id).update(
            {column: new}, synchronize_session=False
        )
        delta = new - previous
    else:
        updated = (
            db.query(model)
            .filter(model.id == target_id, column + delta >= 0)
            .update({column: column + delta}, synchronize_session=False)
        )
        if updated != 1:
            available = _read_quantity(db, model, target_id)
            raise errors.InsufficientStock(
                f"Not enough {target.name} in stock",
                shortages=[
                    {
                        "kind": _target_kind(target),
                        "id": target_id,
                        "name": target.name,
                        "needed": -delta,
                        "available": available,
                    }
                ],
            )
        new = _read_quantity(db, model, target_id)
        previous = new - delta

    movement = models.StockMovement(
        delta=delta,
        reason=reason,
        previous_quantity=previous,
        new_quantity=new,
        order_id=order_id,
        request_id=request_id,
        note=note,
        performed_by=performed_by,
    )
    if isinstance(target, models.Ingredient):
        movement.ingredient_id = target_id
    else:
        movement.stock_item_id = target_id
    db.add(movement)
    db.flush()
    db.refresh(target)
    logger.info(
        "%s %s: %+d (%s) -> %d", _target_kind(target), target_id, delta, reason.value, new
    )
    return movement


def _resolve_target(
    db: Session, ingredient_id: Optional[int], stock_item_id: Optional[int]
) -> StockTarget:
    if (ingredient_id is None) == (stock_item_id is None):
        raise errors.ValidationError("Give exactly one of ingredient_id or stock_item_id")
    if ingredient_id is not None:
        target = db.get(models.Ingredient, ingredient_id)
    else:
        target = db.get(models.StockItem, stock_item_id)
    if target is None:
        raise errors.NotFound(
            "Stock entry not found", ingredient_id=ingredient_id, stock_item_id=stock_item_id
        )
    return target


@operation
def adjust_stock(db: Session, payload: schemas.StockAdjustment, actor: Actor):
    require(actor, "STOCK_MANAGE")
    if payload.reason not in MANUAL_REASONS:
        raise errors.ValidationError(
            f"{payload.reason.value} is not a manual adjustment reason"
        )
    if payload.delta == 0:
        raise errors.ValidationError("delta must not be zero")
    if payload.reason in INCREASING_REASONS and payload.delta < 0:
        raise errors.ValidationError("restock delta must be positive")
    if payload.reason in DECREASING_REASONS and payload.delta > 0:
        raise errors.ValidationError(f"{payload.reason.value} delta must be negative")
    target = _resolve_target(db, payload.ingredient_id, payload.stock_item_id)
    try:
        movement = apply_delta(
            db,
            target,
            payload.delta,
            payload.reason,
            performed_by=actor.user_id,
            note=payload.note,
        )
    except errors.InsufficientStock as exc:
        raise errors.ValidationError(
            "Adjustment would make stock negative; use a force adjustment", **exc.details
        )
    db.commit()
    db.refresh(movement)
    return movement


def _order_needs(db: Session, order: models.Order):
    ingredient_needs: Dict[int, int] = defaultdict(int)
    item_needs: Dict[int, int] = defaultdict(int)
    for line in order.items:
        if line.menu_item_id is None:
            continue
        recipe = (
            db.query(models.RecipeIngredient)
            .filter(models.RecipeIngredient.menu_item_id == line.menu_item_id)
            .all()
        )
        for entry in recipe:
            ingredient_needs[entry.ingredient_id] += entry.quantity_per_unit * line.quantity
        stock_item = (
            db.query(models.StockItem)
            .filter(
                models.StockItem.menu_item_id == line.menu_item_id,
                models.StockItem.is_active == True,
            )
            .first()
        )
        if stock_item is not None:
            item_needs[stock_item.id] += line.quantity
    return ingredient_needs, item_needs


def consume_for_order(
    db: Session, order: models.Order, performed_by: Optional[int] = None
) -> List[models.StockMovement]:
    """Decrement every recipe ingredient and linked stock item of an order.

    Raises InsufficientStock listing every shortage. Nothing is committed;
    the caller rolls back on failure so no partial decrement survives.
    """
    ingredient_needs, item_needs = _order_needs(db, order)
    movements = []
    shortages = []
    plan = [(models.Ingredient, ingredient_needs), (models.StockItem, item_needs)]
    for model, needs in plan:
        # Fixed lock order across concurrent confirmations.
        for target_id in sorted(needs):
            target = db.get(model, target_id)
            try:
                movements.append(
                    apply_delta(
                        db,
                        target,
                        -needs[target_id],
                        MovementReason.sale,
                        performed_by=performed_by,
                        order_id=order.id,
                        note=f"Order #{order.id}",
                    )
                )
            except errors.InsufficientStock as exc:
                shortages.extend(exc.details["shortages"])
    if shortages:
        raise errors.InsufficientStock(
            f"Insufficient stock for order #{order.id}", order_id=order.id, shortages=shortages
        )
    return movements


@operation
def decrement_for_order(db: Session, order_id: int, actor: Actor):
    require(actor, "STOCK_MANAGE")
    order = db.get(models.Order, order_id)
    if order is None:
        raise errors.NotFound("Order not found", order_id=order_id)
    movements = consume_for_order(db, order, performed_by=actor.user_id)
    db.commit()
    return movements


# Ingredients and stock items ---------------------------------------------------


def list_ingredients(db: Session, include_inactive: bool = False):
    query = db.query(models.Ingredient)
    if not include_inactive:
        query = query.filter(models.Ingredient.is_active == True)
    return query.order_by(models.Ingredient.name).all()


def _updates(payload, required):
    data = payload.model_dump(exclude_unset=True)
    nulls = sorted(key for key in required if key in data and data[key] is None)
    if nulls:
        raise errors.ValidationError("Fields cannot be null", fields=nulls)
    return data


def _check_ingredient_name(db: Session, name: str, ingredient_id: Optional[int] = None):
    query = db.query(models.Ingredient).filter(models.Ingredient.name == name)
    if ingredient_id is not None:
        query = query.filter(models.Ingredient.id != ingredient_id)
    if query.first():
        raise errors.ValidationError("Ingredient already exists", name=name)


@operation
def create_ingredient(db: Session, payload: schemas.IngredientCreate, actor: Actor):
    require(actor, "STOCK_MANAGE")
    _check_ingredient_name(db, payload.name)
    data = payload.model_dump()
    ingredient = models.Ingredient(**data, initial_quantity=data["quantity_on_hand"])
    db.add(ingredient)
    db.commit()
    db.refresh(ingredient)
    return ingredient


@operation
def update_ingredient(
    db: Session, ingredient_id: int, payload: schemas.IngredientUpdate, actor: Actor
):
    require(actor, "STOCK_MANAGE")
    ingredient = db.get(models.Ingredient, ingredient_id)
    if ingredient is None:
        raise errors.NotFound("Ingredient not found", ingredient_id=ingredient_id)
    # Quantity only moves through the ledger.
    data = _updates(payload, ("name", "unit", "reorder_threshold", "is_active"))
    if "name" in data:
        _check_ingredient_name(db, data["name"], ingredient_id)
    for key, value in data.items():
        setattr(ingredient, key, value)
    db.commit()
    db.refresh(ingredient)
    return ingredient


@operation
def deactivate_ingredient(db: Session, ingredient_id: int, actor: Actor):
    require(actor, "STOCK_MANAGE")
    ingredient = db.get(models.Ingredient, ingredient_id)
    if ingredient is None:
        raise errors.NotFound("Ingredient not found", ingredient_id=ingredient_id)
    ingredient.is_active = False
    db.commit()
    db.refresh(ingredient)
    return ingredient


def list_stock_items(db: Session, include_inactive: bool = False):
    query = db.query(models.StockItem)
    if not include_inactive:
        query = query.filter(models.StockItem.is_active == True)
    return query.order_by(models.StockItem.name).all()


def _check_menu_link(db: Session, menu_item_id: Optional[int], stock_item_id=None):
    if menu_item_id is None:
        return
    if db.get(models.MenuItem, menu_item_id) is None:
        raise errors.NotFound("Menu item not found", menu_item_id=menu_item_id)
    linked = (
        db.query(models.StockItem)
        .filter(models.StockItem.menu_item_id == menu_item_id)
        .first()
    )
    if linked is not None and linked.id != stock_item_id:
        raise errors.ValidationError(
            "Menu item already has a stock item", menu_item_id=menu_item_id
        )


@operation
def create_stock_item(db: Session, payload: schemas.StockItemCreate, actor: Actor):
    require(actor, "STOCK_MANAGE")
    _check_menu_link(db, payload.menu_item_id)
    data = payload.model_dump()
    item = models.StockItem(**data, initial_quantity=data["quantity_on_hand"])
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


@operation
def update_stock_item(
    db: Session, stock_item_id: int, payload: schemas.StockItemUpdate, actor: Actor
):
    require(actor, "STOCK_MANAGE")
    item = db.get(models.StockItem, stock_item_id)
    if item is None:
        raise errors.NotFound("Stock item not found", stock_item_id=stock_item_id)
    data = _updates(payload, ("name", "unit", "reorder_threshold", "is_active"))
    if "menu_item_id" in data:
        _check_menu_link(db, data["menu_item_id"], stock_item_id)
    for key, value in data.items():
        setattr(item, key, value)
    db.commit()
    db.refresh(item)
    return item


# Recipes ------------------------------------------------------------------------


def list_recipe_ingredients(db: Session, menu_item_id: Optional[int] = None):
    query = db.query(models.RecipeIngredient)
    if menu_item_id is not None:
        query = query.filter(models.RecipeIngredient.menu_item_id == menu_item_id)
    return query.order_by(models.RecipeIngredient.menu_item_id, models.RecipeIngredient.id).all()


@operation
def create_recipe_ingredient(db: Session, payload: schemas.RecipeIngredientCreate, actor: Actor):
    require(actor, "STOCK_MANAGE")
    if db.get(models.MenuItem, payload.menu_item_id) is None:
        raise errors.NotFound("Menu item not found", menu_item_id=payload.menu_item_id)
    if db.get(models.Ingredient, payload.ingredient_id) is None:
        raise errors.NotFound("Ingredient not found", ingredient_id=payload.ingredient_id)
    exists = (
        db.query(models.RecipeIngredient)
        .filter(
            models.RecipeIngredient.menu_item_id == payload.menu_item_id,
            models.RecipeIngredient.ingredient_id == payload.ingredient_id,
        )
        .first()
    )
    if exists:
        raise errors.ValidationError("Ingredient already in recipe", recipe_id=exists.id)
    entry = models.RecipeIngredient(**payload.model_dump())
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry


@operation
def update_recipe_ingredient(
    db: Session, recipe_id: int, payload: schemas.RecipeIngredientUpdate, actor: Actor
):
    require(actor, "STOCK_MANAGE")
    entry = db.get(models.RecipeIngredient, recipe_id)
    if entry is None:
        raise errors.NotFound("Recipe entry not found", recipe_id=recipe_id)
    entry.quantity_per_unit = payload.quantity_per_unit
    db.commit()
    db.refresh(entry)
    return entry


@operation
def delete_recipe_ingredient(db: Session, recipe_id: int, actor: Actor):
    require(actor, "STOCK_MANAGE")
    entry = db.get(models.RecipeIngredient, recipe_id)
    if entry is None:
        raise errors.NotFound("Recipe entry not found", recipe_id=recipe_id)
    db.delete(entry)
    db.commit()
    return recipe_id


# Ingredient requests ---------------------------------------------------------------


def list_ingredient_requests(db: Session, status: Optional[RequestStatus] = None):
    query = db.query(models.IngredientRequest)
    if status is not None:
        query = query.filter(models.IngredientRequest.status == status)
    return query.order_by(models.IngredientRequest.created_at.desc()).all()


def _file_request(db: Session, ingredient_id, quantity, kind, reason, actor: Actor):
    request = models.IngredientRequest(
        ingredient_id=ingredient_id,
        quantity=quantity,
        kind=kind,
        reason=reason,
        status=RequestStatus.pending,
        requested_by=actor.user_id,
    )
    db.add(request)
    db.flush()
    logger.info("%s request %s filed for ingredient %s", kind.value, request.id, ingredient_id)
    return request


@operation
def create_ingredient_request(
    db: Session, payload: schemas.IngredientRequestCreate, actor: Actor
):
    require(actor, "INGREDIENT_REQUEST")
    if db.get(models.Ingredient, payload.ingredient_id) is None:
        raise errors.NotFound("Ingredient not found", ingredient_id=payload.ingredient_id)
    request = _file_request(
        db, payload.ingredient_id, payload.quantity, payload.kind, payload.reason, actor
    )
    db.commit()
    db.refresh(request)
    return request


def _move_request(db: Session, request_id: int, allowed_from, new_status, actor: Actor, **values):
    request = db.get(models.IngredientRequest, request_id)
    if request is None:
        raise errors.NotFound("Ingredient request not found", request_id=request_id)
    current = request.status
    if current not in allowed_from:
        raise errors.InvalidTransition(
            f"Request is {current.value}, cannot become {new_status.value}",
            current=current.value,
            requested=new_status.value,
        )
    values = {getattr(models.IngredientRequest, key): value for key, value in values.items()}
    values.update(
        {
            models.IngredientRequest.status: new_status,
            models.IngredientRequest.processed_by: actor.user_id,
            models.IngredientRequest.processed_at: utcnow(),
        }
    )
    moved = (
        db.query(models.IngredientRequest)
        .filter(
            models.IngredientRequest.id == request_id,
            models.IngredientRequest.status == current,
        )
        .update(values, synchronize_session=False)
    )
    if moved != 1:
        raise errors.InvalidTransition(
            "Request changed concurrently", request_id=request_id, requested=new_status.value
        )
    return request


@operation
def approve_ingredient_request(db: Session, request_id: int, actor: Actor):
    require(actor, "STOCK_MANAGE")
    request = _move_request(
        db, request_id, {RequestStatus.pending}, RequestStatus.approved, actor
    )
    db.commit()
    db.refresh(request)
    return request


@operation
def reject_ingredient_request(
    db: Session, request_id: int, actor: Actor, reason: Optional[str] = None
):
    require(actor, "STOCK_MANAGE")
    request = _move_request(
        db,
        request_id,
        {RequestStatus.pending},
        RequestStatus.rejected,
        actor,
        rejection_reason=reason,
    )
    db.commit()
    db.refresh(request)
    return request


@operation
def fulfill_ingredient_request(db: Session, request_id: int, actor: Actor):
    """Mark a request fulfilled and move the requested quantity.

    Restock requests add stock, withdrawal requests take it out.
    """
    require(actor, "STOCK_MANAGE")
    request = _move_request(
        db,
        request_id,
        {RequestStatus.pending, RequestStatus.approved},
        RequestStatus.fulfilled,
        actor,
    )
    delta = request.quantity if request.kind == RequestKind.restock else -request.quantity
    apply_delta(
        db,
        request.ingredient,
        delta,
        MovementReason.request,
        performed_by=actor.user_id,
        request_id=request.id,
        note=f"{request.kind.value} request #{request.id}",
    )
    db.commit()
    db.refresh(request)
    return request


@operation
def withdraw_ingredient(db: Session, payload: schemas.WithdrawalIn, actor: Actor) -> Withdrawal:
    """Kitchen withdrawal; above the approval threshold it becomes a request."""
    require(actor, "INGREDIENT_REQUEST")
    ingredient = db.get(models.Ingredient, payload.ingredient_id)
    if ingredient is None or not ingredient.is_active:
        raise errors.NotFound("Ingredient not found", ingredient_id=payload.ingredient_id)
    threshold = ingredient.approval_threshold
    if threshold is not None and payload.quantity > threshold and not actor.is_admin:
        request = _file_request(
            db, ingredient.id, payload.quantity, RequestKind.withdrawal, payload.note, actor
        )
        db.commit()
        db.refresh(request)
        return Withdrawal(needs_approval=True, request=request)
    movement = apply_delta(
        db,
        ingredient,
        -payload.quantity,
        MovementReason.withdrawal,
        performed_by=actor.user_id,
        note=payload.note,
    )
    db.commit()
    db.refresh(movement)
    return Withdrawal(needs_approval=False, movement=movement)


# Reporting ---------------------------------------------------------------------------


def list_movements(
    db: Session,
    ingredient_id: Optional[int] = None,
    stock_item_id: Optional[int] = None,
    limit: int = 50,
):
    query = db.query(models.StockMovement)
    if ingredient_id is not None:
        query = query.filter(models.StockMovement.ingredient_id == ingredient_id)
    if stock_item_id is not None:
        query = query.filter(models.StockMovement.stock_item_id == stock_item_id)
    return (
        query.order_by(models.StockMovement.created_at.desc(), models.StockMovement.id.desc())
        .limit(limit)
        .all()
    )


def low_stock_alerts(db: Session) -> List[dict]:
    alerts = []
    for kind, model in (("ingredient", models.Ingredient), ("stock_item", models.StockItem)):
        rows = (
            db.query(model)
            .filter(model.is_active == True, model.quantity_on_hand <= model.reorder_threshold)
            .order_by(model.name)
            .all()
        )
        alerts.extend(
            {
                "kind": kind,
                "id": row.id,
                "name": row.name,
                "unit": row.unit,
                "quantity_on_hand": row.quantity_on_hand,
                "reorder_threshold": row.reorder_threshold,
            }
            for row in rows
        )
    return alerts


@operation
def reconcile(db: Session, ingredient_id: Optional[int] = None, stock_item_id: Optional[int] = None):
    target = _resolve_target(db, ingredient_id, stock_item_id)
    column = (
        models.StockMovement.ingredient_id
        if isinstance(target, models.Ingredient)
        else models.StockMovement.stock_item_id
    )
    total = (
        db.query(func.coalesce(func.sum(models.StockMovement.delta), 0))
        .filter(column == target.id)
        .scalar()
    )
    return {
        "kind": _target_kind(target),
        "id": target.id,
        "quantity_on_hand": target.quantity_on_hand,
        "initial_quantity": target.initial_quantity,
        "movement_total": total,
        "consistent": target.quantity_on_hand - target.initial_quantity == total,
    }

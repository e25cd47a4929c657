import logging
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from . import auth, crud, models, schemas
from .config import HOST, PORT, SEED_MENU
from .db import Base, SessionLocal, engine, get_db
from .errors import ErrorKind, Result
from .logging_config import configure_logging
from .models import OrderStatus, ReportPeriod, RequestStatus, Role
from .permissions import PERMISSIONS, Actor
from .services import orders, reports, sessions, stock

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Tableside")

ERROR_STATUS = {
    ErrorKind.validation: 400,
    ErrorKind.not_found: 404,
    ErrorKind.permission_denied: 403,
    ErrorKind.invalid_transition: 409,
    ErrorKind.insufficient_stock: 409,
}


def unwrap(result: Result):
    if result.ok:
        return result.data
    detail = {"error": result.error.value, "message": result.message}
    if result.details:
        detail["details"] = result.details
    raise HTTPException(status_code=ERROR_STATUS[result.error], detail=detail)


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        crud.ensure_super_admin(db)
        if SEED_MENU:
            crud.seed_menu(db)
    finally:
        db.close()


@app.get("/")
def health():
    return {"status": "ok"}


# Auth and users


@app.post("/auth/register", response_model=schemas.UserOut)
def register(user_in: schemas.UserCreate, db: Session = Depends(get_db)):
    if crud.get_user_by_email(db, user_in.email):
        raise HTTPException(status_code=400, detail="Email already registered")
    return crud.create_user(
        db, user_in.email, user_in.password, full_name=user_in.full_name, phone=user_in.phone
    )


@app.post("/auth/login", response_model=schemas.Token)
def login(
    form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)
):
    user = crud.authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(status_code=400, detail="Incorrect email or password")
    token = auth.create_access_token({"sub": str(user.id)})
    return {"access_token": token, "token_type": "bearer"}


@app.get("/me", response_model=schemas.UserOut)
def get_me(current_user: models.User = Depends(auth.get_current_user)):
    return current_user


@app.get("/me/permissions")
def get_my_permissions(actor: Actor = Depends(auth.get_current_actor)):
    return {
        "role": actor.role.value if actor.role else None,
        "is_staff": actor.is_staff,
        "is_admin": actor.is_admin,
        "can_validate_payments": actor.can_validate_payments,
        "permissions": sorted(name for name in PERMISSIONS if actor.can(name)),
    }


@app.get("/admin/users", response_model=list[schemas.UserOut])
def list_users(
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("USERS_MANAGE")),
):
    return crud.list_users(db)


@app.post("/admin/users", response_model=schemas.UserOut)
def create_staff_user(
    user_in: schemas.StaffCreate,
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("USERS_MANAGE")),
):
    if user_in.role == Role.super_admin:
        raise HTTPException(status_code=400, detail="Cannot create a super admin")
    if crud.get_user_by_email(db, user_in.email):
        raise HTTPException(status_code=400, detail="Email already registered")
    return crud.create_user(
        db,
        user_in.email,
        user_in.password,
        full_name=user_in.full_name,
        phone=user_in.phone,
        role=user_in.role,
    )


@app.delete("/admin/users/{user_id}")
def delete_user(
    user_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.require_permission("USERS_MANAGE")),
):
    if actor.user_id == user_id:
        raise HTTPException(status_code=400, detail="Cannot delete your own account")
    user = crud.get_user(db, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.role == Role.super_admin:
        raise HTTPException(status_code=400, detail="Cannot delete a super admin")
    crud.delete_user(db, user)
    return {"ok": True}


@app.put("/admin/users/{user_id}/role", response_model=schemas.UserOut)
def update_user_role(
    user_id: int,
    role_in: schemas.RoleUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.require_permission("USERS_MANAGE")),
):
    if role_in.role == Role.super_admin:
        raise HTTPException(status_code=400, detail="Cannot grant super admin")
    if actor.user_id == user_id:
        raise HTTPException(status_code=400, detail="Cannot change your own role")
    user = crud.get_user(db, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.role == Role.super_admin:
        raise HTTPException(status_code=400, detail="Cannot change a super admin")
    return crud.set_user_role(db, user, role_in.role)


# Menu


@app.get("/menu", response_model=list[schemas.MenuItemOut])
def get_menu(available_only: bool = False, db: Session = Depends(get_db)):
    return crud.list_menu(db, available_only=available_only)


@app.post("/menu", response_model=schemas.MenuItemOut)
def create_menu(
    menu_in: schemas.MenuItemCreate,
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("MENU_MANAGE")),
):
    return crud.create_menu_item(db, menu_in.model_dump())


@app.put("/menu/{item_id}", response_model=schemas.MenuItemOut)
def update_menu(
    item_id: int,
    menu_in: schemas.MenuItemCreate,
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("MENU_MANAGE")),
):
    item = crud.get_menu_item(db, item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Menu item not found")
    return crud.update_menu_item(db, item, menu_in.model_dump())


@app.delete("/menu/{item_id}")
def delete_menu(
    item_id: int,
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("MENU_MANAGE")),
):
    item = crud.get_menu_item(db, item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Menu item not found")
    crud.delete_menu_item(db, item)
    return {"ok": True}


# Tables and sessions


def table_status_out(entry: dict) -> schemas.TableStatusOut:
    session = entry["active_session"]
    return schemas.TableStatusOut(
        **schemas.TableOut.model_validate(entry["table"]).model_dump(),
        active_session=schemas.SessionOut.model_validate(session) if session else None,
        open_orders=entry["open_orders"],
    )


@app.get("/tables", response_model=list[schemas.TableStatusOut])
def list_tables(
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("TABLES_VIEW")),
):
    return [table_status_out(entry) for entry in sessions.list_tables_with_status(db)]


@app.post("/tables", response_model=schemas.TableOut)
def create_table(
    table_in: schemas.TableCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(sessions.create_table(db, table_in, actor))


@app.patch("/tables/{table_id}", response_model=schemas.TableOut)
def update_table(
    table_id: int,
    table_in: schemas.TableUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(sessions.update_table(db, table_id, table_in, actor))


@app.delete("/tables/{table_id}")
def delete_table(
    table_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    unwrap(sessions.delete_table(db, table_id, actor))
    return {"ok": True}


@app.post("/tables/{table_id}/reset", response_model=Optional[schemas.SessionOut])
def reset_table(
    table_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(sessions.reset_table(db, table_id, actor))


@app.post("/sessions/{session_id}/close", response_model=schemas.SessionOut)
def close_session(
    session_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(sessions.close_table_session(db, session_id, actor))


@app.get("/t/{table_token}", response_model=schemas.TablePublic)
def scan_table(table_token: str, db: Session = Depends(get_db)):
    table = sessions.get_table_by_token(db, table_token)
    if not table:
        raise HTTPException(status_code=404, detail="Table not found")
    return table


@app.post("/t/{table_token}/session", response_model=schemas.SessionStartOut)
def start_session(table_token: str, db: Session = Depends(get_db)):
    started = unwrap(sessions.create_table_session(db, table_token))
    return schemas.SessionStartOut(
        table=schemas.TablePublic.model_validate(started.table),
        session=schemas.SessionOut.model_validate(started.session),
        in_progress=started.in_progress,
    )


@app.get("/t/{table_token}/s/{session_token}", response_model=schemas.SessionCheckOut)
def check_session(table_token: str, session_token: str, db: Session = Depends(get_db)):
    check = sessions.validate_session_token(db, table_token, session_token)
    return schemas.SessionCheckOut(
        valid=check.valid,
        reason=check.reason,
        session=schemas.SessionOut.model_validate(check.session) if check.session else None,
    )


def _session_for(db: Session, table_token: str, session_token: str) -> models.TableSession:
    check = sessions.validate_session_token(db, table_token, session_token)
    if not check.valid:
        raise HTTPException(
            status_code=404,
            detail={"error": ErrorKind.not_found.value, "message": f"Session {check.reason}"},
        )
    return check.session


@app.post("/t/{table_token}/s/{session_token}/orders", response_model=schemas.OrderOut)
def create_session_order(
    table_token: str,
    session_token: str,
    order_in: schemas.SessionOrderCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    _session_for(db, table_token, session_token)
    payload = schemas.OrderCreate(
        items=order_in.items,
        client_name=order_in.client_name,
        notes=order_in.notes,
        session_token=session_token,
    )
    return unwrap(orders.create_order(db, payload, actor))


@app.get("/t/{table_token}/s/{session_token}/orders", response_model=list[schemas.OrderOut])
def list_session_orders(table_token: str, session_token: str, db: Session = Depends(get_db)):
    session = _session_for(db, table_token, session_token)
    return orders.list_session_orders(db, session.id)


# Orders


@app.post("/orders", response_model=schemas.OrderOut)
def create_order(
    order_in: schemas.OrderCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(orders.create_order(db, order_in, actor))


@app.get("/orders", response_model=list[schemas.OrderOut])
def list_orders(
    status: Optional[OrderStatus] = None,
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("ORDERS_VIEW")),
):
    return orders.list_orders(db, status)


@app.get("/orders/{order_id}", response_model=schemas.OrderOut)
def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("ORDERS_VIEW")),
):
    order = orders.get_order(db, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@app.post("/orders/{order_id}/status", response_model=schemas.OrderOut)
def update_order_status(
    order_id: int,
    status_in: schemas.StatusUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(
        orders.update_order_status(db, order_id, status_in.status, actor, reason=status_in.reason)
    )


@app.post("/orders/{order_id}/payment", response_model=schemas.OrderOut)
def validate_payment(
    order_id: int,
    payment_in: schemas.PaymentIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(orders.validate_payment(db, order_id, payment_in.method, actor))


@app.get("/kitchen/board", response_model=list[schemas.OrderOut])
def kitchen_board(
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("KITCHEN_ACCESS")),
):
    return orders.kitchen_board(db)


# Stock


@app.get("/stock/ingredients", response_model=list[schemas.IngredientOut])
def list_ingredients(
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("STOCK_VIEW")),
):
    return stock.list_ingredients(db, include_inactive)


@app.post("/stock/ingredients", response_model=schemas.IngredientOut)
def create_ingredient(
    ingredient_in: schemas.IngredientCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(stock.create_ingredient(db, ingredient_in, actor))


@app.patch("/stock/ingredients/{ingredient_id}", response_model=schemas.IngredientOut)
def update_ingredient(
    ingredient_id: int,
    ingredient_in: schemas.IngredientUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(stock.update_ingredient(db, ingredient_id, ingredient_in, actor))


@app.delete("/stock/ingredients/{ingredient_id}", response_model=schemas.IngredientOut)
def deactivate_ingredient(
    ingredient_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(stock.deactivate_ingredient(db, ingredient_id, actor))


@app.get("/stock/items", response_model=list[schemas.StockItemOut])
def list_stock_items(
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("STOCK_VIEW")),
):
    return stock.list_stock_items(db, include_inactive)


@app.post("/stock/items", response_model=schemas.StockItemOut)
def create_stock_item(
    item_in: schemas.StockItemCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(stock.create_stock_item(db, item_in, actor))


@app.patch("/stock/items/{stock_item_id}", response_model=schemas.StockItemOut)
def update_stock_item(
    stock_item_id: int,
    item_in: schemas.StockItemUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(stock.update_stock_item(db, stock_item_id, item_in, actor))


@app.get("/stock/recipes", response_model=list[schemas.RecipeIngredientOut])
def list_recipes(
    menu_item_id: Optional[int] = None,
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("STOCK_VIEW")),
):
    return stock.list_recipe_ingredients(db, menu_item_id)


@app.post("/stock/recipes", response_model=schemas.RecipeIngredientOut)
def create_recipe_ingredient(
    recipe_in: schemas.RecipeIngredientCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(stock.create_recipe_ingredient(db, recipe_in, actor))


@app.patch("/stock/recipes/{recipe_id}", response_model=schemas.RecipeIngredientOut)
def update_recipe_ingredient(
    recipe_id: int,
    recipe_in: schemas.RecipeIngredientUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(stock.update_recipe_ingredient(db, recipe_id, recipe_in, actor))


@app.delete("/stock/recipes/{recipe_id}")
def delete_recipe_ingredient(
    recipe_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    unwrap(stock.delete_recipe_ingredient(db, recipe_id, actor))
    return {"ok": True}


@app.post("/stock/adjust", response_model=schemas.StockMovementOut)
def adjust_stock(
    adjustment: schemas.StockAdjustment,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(stock.adjust_stock(db, adjustment, actor))


@app.post("/stock/withdraw", response_model=schemas.WithdrawalOut)
def withdraw_ingredient(
    withdrawal_in: schemas.WithdrawalIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    withdrawal = unwrap(stock.withdraw_ingredient(db, withdrawal_in, actor))
    return schemas.WithdrawalOut(
        needs_approval=withdrawal.needs_approval,
        movement=(
            schemas.StockMovementOut.model_validate(withdrawal.movement)
            if withdrawal.movement
            else None
        ),
        request_id=withdrawal.request.id if withdrawal.request else None,
    )


@app.get("/stock/movements", response_model=list[schemas.StockMovementOut])
def list_movements(
    ingredient_id: Optional[int] = None,
    stock_item_id: Optional[int] = None,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("STOCK_VIEW")),
):
    return stock.list_movements(db, ingredient_id, stock_item_id, limit)


@app.get("/stock/alerts", response_model=list[schemas.StockAlertOut])
def stock_alerts(
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("STOCK_VIEW")),
):
    return stock.low_stock_alerts(db)


@app.get("/stock/reconcile", response_model=schemas.ReconciliationOut)
def reconcile(
    ingredient_id: Optional[int] = None,
    stock_item_id: Optional[int] = None,
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("STOCK_MANAGE")),
):
    return unwrap(stock.reconcile(db, ingredient_id, stock_item_id))


@app.get("/stock/requests", response_model=list[schemas.IngredientRequestOut])
def list_ingredient_requests(
    status: Optional[RequestStatus] = None,
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("INGREDIENT_REQUEST")),
):
    return stock.list_ingredient_requests(db, status)


@app.post("/stock/requests", response_model=schemas.IngredientRequestOut)
def create_ingredient_request(
    request_in: schemas.IngredientRequestCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(stock.create_ingredient_request(db, request_in, actor))


@app.post("/stock/requests/{request_id}/approve", response_model=schemas.IngredientRequestOut)
def approve_ingredient_request(
    request_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(stock.approve_ingredient_request(db, request_id, actor))


@app.post("/stock/requests/{request_id}/reject", response_model=schemas.IngredientRequestOut)
def reject_ingredient_request(
    request_id: int,
    reject_in: schemas.RequestReject,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(stock.reject_ingredient_request(db, request_id, actor, reason=reject_in.reason))


@app.post("/stock/requests/{request_id}/fulfill", response_model=schemas.IngredientRequestOut)
def fulfill_ingredient_request(
    request_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(auth.get_current_actor),
):
    return unwrap(stock.fulfill_ingredient_request(db, request_id, actor))


# Reports


@app.get("/reports/summary", response_model=schemas.ReportSummaryOut)
def report_summary(
    period: ReportPeriod = ReportPeriod.month,
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("REPORTS_VIEW")),
):
    return reports.summary(db, period)


@app.get("/reports/daily-revenue", response_model=list[schemas.DailyRevenueOut])
def report_daily_revenue(
    days: int = Query(30, ge=1, le=366),
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("REPORTS_VIEW")),
):
    return reports.daily_revenue(db, days)


@app.get("/reports/popular-items", response_model=list[schemas.PopularItemOut])
def report_popular_items(
    limit: int = Query(10, ge=1, le=100),
    days: int = Query(30, ge=1, le=366),
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("REPORTS_VIEW")),
):
    return reports.popular_items(db, limit, days)


@app.get("/reports/channels", response_model=list[schemas.ChannelShareOut])
def report_channels(
    days: int = Query(30, ge=1, le=366),
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("REPORTS_VIEW")),
):
    return reports.channel_distribution(db, days)


@app.get("/reports/orders", response_model=schemas.OrderAnalyticsOut)
def report_orders(
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("REPORTS_VIEW")),
):
    return reports.order_analytics(db)


@app.get("/reports/stock", response_model=schemas.StockAnalyticsOut)
def report_stock(
    db: Session = Depends(get_db),
    _: Actor = Depends(auth.require_permission("REPORTS_VIEW")),
):
    return reports.stock_analytics(db)


def run():
    uvicorn.run("tableside.main:app", host=HOST, port=PORT)


if __name__ == "__main__":
    run()

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field

from .models import (
    ItemSize,
    MovementReason,
    OrderChannel,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RequestKind,
    ReportPeriod,
    RequestStatus,
    Role,
    SessionStatus,
    StockUnit,
    TableLocation,
)


class Token(BaseModel):
    access_token: str
    token_type: str


class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6, max_length=128)
    full_name: str = Field(default="", max_length=120)
    phone: Optional[str] = Field(default=None, max_length=40)


class UserOut(BaseModel):
    id: int
    email: EmailStr
    full_name: str
    phone: Optional[str] = None
    role: Role

    class Config:
        from_attributes = True


class StaffCreate(UserCreate):
    role: Role


class RoleUpdate(BaseModel):
    role: Role


class MenuItemBase(BaseModel):
    name: str
    description: Optional[str] = None
    category: str
    price_cents: int = Field(ge=0)
    price_small_cents: Optional[int] = Field(default=None, ge=0)
    image_url: Optional[str] = None
    is_available: bool = True


class MenuItemCreate(MenuItemBase):
    pass


class MenuItemOut(MenuItemBase):
    id: int

    class Config:
        from_attributes = True


# Tables and sessions


class TableCreate(BaseModel):
    table_number: int = Field(ge=1)
    label: str = Field(min_length=1, max_length=80)
    capacity: int = Field(default=4, ge=1)
    location: TableLocation = TableLocation.indoor


class TableUpdate(BaseModel):
    label: Optional[str] = Field(default=None, min_length=1, max_length=80)
    capacity: Optional[int] = Field(default=None, ge=1)
    location: Optional[TableLocation] = None
    is_active: Optional[bool] = None


class TablePublic(BaseModel):
    id: int
    table_number: int
    label: str
    location: TableLocation

    class Config:
        from_attributes = True


class TableOut(TablePublic):
    capacity: int
    access_token: str
    is_active: bool


class SessionOut(BaseModel):
    id: int
    table_id: int
    session_token: str
    status: SessionStatus
    created_at: datetime
    expires_at: datetime
    closed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TableStatusOut(TableOut):
    active_session: Optional[SessionOut] = None
    open_orders: int = 0


class SessionStartOut(BaseModel):
    table: TablePublic
    session: SessionOut
    in_progress: bool


class SessionCheckOut(BaseModel):
    valid: bool
    reason: Optional[str] = None
    session: Optional[SessionOut] = None


# Orders


class OrderItemIn(BaseModel):
    menu_item_id: int
    quantity: int = 1
    size: ItemSize = ItemSize.regular
    notes: Optional[str] = Field(default=None, max_length=500)


class OrderCreate(BaseModel):
    items: List[OrderItemIn]
    channel: OrderChannel = OrderChannel.takeaway
    client_name: Optional[str] = Field(default=None, max_length=120)
    client_phone: Optional[str] = Field(default=None, max_length=40)
    delivery_address: Optional[str] = Field(default=None, max_length=300)
    notes: Optional[str] = None
    session_token: Optional[str] = None
    table_id: Optional[int] = None


class SessionOrderCreate(BaseModel):
    items: List[OrderItemIn]
    client_name: Optional[str] = Field(default=None, max_length=120)
    notes: Optional[str] = None


class OrderItemOut(BaseModel):
    menu_item_id: Optional[int] = None
    item_name: str
    size: ItemSize
    quantity: int
    unit_price_cents: int
    line_total_cents: int
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class OrderOut(BaseModel):
    id: int
    session_id: Optional[int] = None
    table_id: Optional[int] = None
    status: OrderStatus
    channel: OrderChannel
    client_name: Optional[str] = None
    client_phone: Optional[str] = None
    delivery_address: Optional[str] = None
    notes: Optional[str] = None
    items: List[OrderItemOut]
    subtotal_cents: int
    delivery_fee_cents: int
    total_cents: int
    payment_status: PaymentStatus
    payment_method: Optional[PaymentMethod] = None
    paid_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    confirmed_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class StatusUpdate(BaseModel):
    status: OrderStatus
    reason: Optional[str] = Field(default=None, max_length=300)


class PaymentIn(BaseModel):
    method: PaymentMethod


# Stock


class IngredientBase(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = None
    unit: StockUnit = StockUnit.g
    reorder_threshold: int = Field(default=0, ge=0)
    approval_threshold: Optional[int] = Field(default=None, ge=0)
    unit_cost_cents: int = Field(default=0, ge=0)
    is_active: bool = True


class IngredientCreate(IngredientBase):
    quantity_on_hand: int = Field(default=0, ge=0)


class IngredientUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    unit: Optional[StockUnit] = None
    reorder_threshold: Optional[int] = Field(default=None, ge=0)
    approval_threshold: Optional[int] = Field(default=None, ge=0)
    unit_cost_cents: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


class IngredientOut(IngredientBase):
    id: int
    quantity_on_hand: int
    initial_quantity: int

    class Config:
        from_attributes = True


class StockItemCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    menu_item_id: Optional[int] = None
    unit: StockUnit = StockUnit.unit
    quantity_on_hand: int = Field(default=0, ge=0)
    reorder_threshold: int = Field(default=0, ge=0)
    unit_cost_cents: int = Field(default=0, ge=0)
    is_active: bool = True


class StockItemUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    menu_item_id: Optional[int] = None
    unit: Optional[StockUnit] = None
    reorder_threshold: Optional[int] = Field(default=None, ge=0)
    unit_cost_cents: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


class StockItemOut(BaseModel):
    id: int
    name: str
    menu_item_id: Optional[int] = None
    unit: StockUnit
    quantity_on_hand: int
    initial_quantity: int
    reorder_threshold: int
    unit_cost_cents: int
    is_active: bool

    class Config:
        from_attributes = True


class RecipeIngredientCreate(BaseModel):
    menu_item_id: int
    ingredient_id: int
    quantity_per_unit: int = Field(gt=0)


class RecipeIngredientUpdate(BaseModel):
    quantity_per_unit: int = Field(gt=0)


class RecipeIngredientOut(RecipeIngredientCreate):
    id: int

    class Config:
        from_attributes = True


class StockAdjustment(BaseModel):
    ingredient_id: Optional[int] = None
    stock_item_id: Optional[int] = None
    delta: int
    reason: MovementReason = MovementReason.adjustment
    note: Optional[str] = Field(default=None, max_length=300)


class WithdrawalIn(BaseModel):
    ingredient_id: int
    quantity: int = Field(gt=0)
    note: Optional[str] = Field(default=None, max_length=300)


class StockMovementOut(BaseModel):
    id: int
    ingredient_id: Optional[int] = None
    stock_item_id: Optional[int] = None
    delta: int
    reason: MovementReason
    previous_quantity: int
    new_quantity: int
    order_id: Optional[int] = None
    request_id: Optional[int] = None
    note: Optional[str] = None
    performed_by: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class WithdrawalOut(BaseModel):
    needs_approval: bool
    movement: Optional[StockMovementOut] = None
    request_id: Optional[int] = None


class IngredientRequestCreate(BaseModel):
    ingredient_id: int
    quantity: int = Field(gt=0)
    kind: RequestKind = RequestKind.restock
    reason: Optional[str] = Field(default=None, max_length=300)


class RequestReject(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=300)


class IngredientRequestOut(BaseModel):
    id: int
    ingredient_id: int
    kind: RequestKind
    quantity: int
    reason: Optional[str] = None
    status: RequestStatus
    requested_by: Optional[int] = None
    processed_by: Optional[int] = None
    processed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class StockAlertOut(BaseModel):
    kind: str
    id: int
    name: str
    unit: StockUnit
    quantity_on_hand: int
    reorder_threshold: int


class ReconciliationOut(BaseModel):
    kind: str
    id: int
    quantity_on_hand: int
    initial_quantity: int
    movement_total: int
    consistent: bool


# Reports


class DailyRevenueOut(BaseModel):
    day: date
    revenue_cents: int
    orders: int


class PopularItemOut(BaseModel):
    name: str
    quantity: int
    revenue_cents: int


class ChannelShareOut(BaseModel):
    channel: OrderChannel
    orders: int
    revenue_cents: int


class ReportSummaryOut(BaseModel):
    period: ReportPeriod
    revenue_cents: int
    orders: int
    average_order_cents: int
    completed_orders: int
    open_orders: int
    cancelled_orders: int


class PeriodTotalsOut(BaseModel):
    orders: int
    revenue_cents: int


class OrderAnalyticsOut(BaseModel):
    today: PeriodTotalsOut
    week: PeriodTotalsOut
    month: PeriodTotalsOut


class StockGroupOut(BaseModel):
    total: int
    low_stock: int
    value_cents: int


class StockAnalyticsOut(BaseModel):
    ingredients: StockGroupOut
    stock_items: StockGroupOut
    value_cents: int

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from .db import Base


def utcnow() -> datetime:
    # Naive UTC, matching what SQLite hands back.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Role(str, enum.Enum):
    super_admin = "super_admin"
    admin = "admin"
    cashier = "cashier"
    chef = "chef"
    server = "server"
    customer = "customer"


class TableLocation(str, enum.Enum):
    indoor = "indoor"
    terrace = "terrace"
    vip = "vip"


class SessionStatus(str, enum.Enum):
    active = "active"
    closed = "closed"


class OrderStatus(str, enum.Enum):
    pending = "pending"
    confirmed = "confirmed"
    preparing = "preparing"
    ready = "ready"
    completed = "completed"
    cancelled = "cancelled"


class OrderChannel(str, enum.Enum):
    dine_in = "dine_in"
    takeaway = "takeaway"
    delivery = "delivery"


class ItemSize(str, enum.Enum):
    regular = "regular"
    small = "small"


class PaymentStatus(str, enum.Enum):
    unpaid = "unpaid"
    paid = "paid"


class PaymentMethod(str, enum.Enum):
    cash = "cash"
    card = "card"
    wave = "wave"
    orange_money = "orange_money"
    mtn_money = "mtn_money"


class StockUnit(str, enum.Enum):
    unit = "unit"
    g = "g"
    ml = "ml"
    piece = "piece"


class MovementReason(str, enum.Enum):
    sale = "sale"
    restock = "restock"
    adjustment = "adjustment"
    waste = "waste"
    withdrawal = "withdrawal"
    request = "request"
    force = "force"


class RequestKind(str, enum.Enum):
    restock = "restock"
    withdrawal = "withdrawal"


class RequestStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    fulfilled = "fulfilled"


class ReportPeriod(str, enum.Enum):
    day = "day"
    week = "week"
    month = "month"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(320), unique=True, index=True, nullable=False)
    full_name = Column(String(120), nullable=False, default="")
    phone = Column(String(40), nullable=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(Enum(Role), default=Role.customer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class MenuItem(Base):
    __tablename__ = "menu_items"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    description = Column(String(500), nullable=True)
    category = Column(String(80), nullable=False)
    price_cents = Column(Integer, nullable=False)
    price_small_cents = Column(Integer, nullable=True)
    image_url = Column(String(500), nullable=True)
    is_available = Column(Boolean, default=True, nullable=False)

    recipe = relationship(
        "RecipeIngredient", back_populates="menu_item", cascade="all, delete-orphan"
    )


class RestaurantTable(Base):
    __tablename__ = "restaurant_tables"

    id = Column(Integer, primary_key=True, index=True)
    table_number = Column(Integer, unique=True, nullable=False)
    label = Column(String(80), nullable=False)
    location = Column(Enum(TableLocation), default=TableLocation.indoor, nullable=False)
    capacity = Column(Integer, default=4, nullable=False)
    access_token = Column(String(64), unique=True, index=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    sessions = relationship("TableSession", back_populates="table")


class TableSession(Base):
    __tablename__ = "table_sessions"
    __table_args__ = (
        # At most one active session per table.
        Index(
            "uq_table_sessions_one_active",
            "table_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    table_id = Column(Integer, ForeignKey("restaurant_tables.id"), nullable=False)
    session_token = Column(String(64), unique=True, index=True, nullable=False)
    status = Column(Enum(SessionStatus), default=SessionStatus.active, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    closed_at = Column(DateTime, nullable=True)

    table = relationship("RestaurantTable", back_populates="sessions")
    orders = relationship("Order", back_populates="session")


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("table_sessions.id"), nullable=True)
    table_id = Column(Integer, ForeignKey("restaurant_tables.id"), nullable=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    status = Column(Enum(OrderStatus), default=OrderStatus.pending, nullable=False)
    channel = Column(Enum(OrderChannel), nullable=False)
    client_name = Column(String(120), nullable=True)
    client_phone = Column(String(40), nullable=True)
    delivery_address = Column(String(300), nullable=True)
    notes = Column(Text, nullable=True)
    subtotal_cents = Column(Integer, nullable=False)
    delivery_fee_cents = Column(Integer, default=0, nullable=False)
    total_cents = Column(Integer, nullable=False)

    payment_status = Column(Enum(PaymentStatus), default=PaymentStatus.unpaid, nullable=False)
    payment_method = Column(Enum(PaymentMethod), nullable=True)
    paid_at = Column(DateTime, nullable=True)
    validated_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    cancellation_reason = Column(String(300), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
    confirmed_at = Column(DateTime, nullable=True)
    ready_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    session = relationship("TableSession", back_populates="orders")
    table = relationship("RestaurantTable")
    items = relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    position = Column(Integer, nullable=False)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=True)
    item_name = Column(String(120), nullable=False)
    size = Column(Enum(ItemSize), default=ItemSize.regular, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=False)
    line_total_cents = Column(Integer, nullable=False)
    notes = Column(String(500), nullable=True)

    order = relationship("Order", back_populates="items")


class Ingredient(Base):
    __tablename__ = "ingredients"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), unique=True, nullable=False)
    description = Column(String(500), nullable=True)
    unit = Column(Enum(StockUnit), default=StockUnit.g, nullable=False)
    quantity_on_hand = Column(Integer, default=0, nullable=False)
    initial_quantity = Column(Integer, default=0, nullable=False)
    reorder_threshold = Column(Integer, default=0, nullable=False)
    approval_threshold = Column(Integer, nullable=True)
    unit_cost_cents = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class StockItem(Base):
    __tablename__ = "stock_items"

    id = Column(Integer, primary_key=True, index=True)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id"), unique=True, nullable=True)
    name = Column(String(120), nullable=False)
    unit = Column(Enum(StockUnit), default=StockUnit.unit, nullable=False)
    quantity_on_hand = Column(Integer, default=0, nullable=False)
    initial_quantity = Column(Integer, default=0, nullable=False)
    reorder_threshold = Column(Integer, default=0, nullable=False)
    unit_cost_cents = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class RecipeIngredient(Base):
    __tablename__ = "recipe_ingredients"
    __table_args__ = (
        UniqueConstraint("menu_item_id", "ingredient_id", name="uq_recipe_ingredient"),
    )

    id = Column(Integer, primary_key=True, index=True)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=False)
    ingredient_id = Column(Integer, ForeignKey("ingredients.id"), nullable=False)
    quantity_per_unit = Column(Integer, nullable=False)

    menu_item = relationship("MenuItem", back_populates="recipe")
    ingredient = relationship("Ingredient")


class StockMovement(Base):
    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True, index=True)
    ingredient_id = Column(Integer, ForeignKey("ingredients.id"), nullable=True, index=True)
    stock_item_id = Column(Integer, ForeignKey("stock_items.id"), nullable=True, index=True)
    delta = Column(Integer, nullable=False)
    reason = Column(Enum(MovementReason), nullable=False)
    previous_quantity = Column(Integer, nullable=False)
    new_quantity = Column(Integer, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    request_id = Column(Integer, ForeignKey("ingredient_requests.id"), nullable=True)
    note = Column(String(300), nullable=True)
    performed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class IngredientRequest(Base):
    __tablename__ = "ingredient_requests"

    id = Column(Integer, primary_key=True, index=True)
    ingredient_id = Column(Integer, ForeignKey("ingredients.id"), nullable=False)
    kind = Column(Enum(RequestKind), default=RequestKind.restock, nullable=False)
    quantity = Column(Integer, nullable=False)
    reason = Column(String(300), nullable=True)
    status = Column(Enum(RequestStatus), default=RequestStatus.pending, nullable=False)
    requested_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    processed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    rejection_reason = Column(String(300), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    ingredient = relationship("Ingredient")

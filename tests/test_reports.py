from __future__ import annotations

from datetime import date, datetime

import pytest
from sqlalchemy.orm import Session

from conftest import make_ingredient
from tableside import models
from tableside.models import OrderChannel, OrderStatus, ReportPeriod
from tableside.services import reports

NOW = datetime(2026, 3, 10, 15, 0)


def _order(db, created_at, status, channel, lines, delivery_fee=0):
    items = [
        models.OrderItem(
            position=position,
            item_name=name,
            quantity=quantity,
            unit_price_cents=line_total // quantity,
            line_total_cents=line_total,
        )
        for position, (name, quantity, line_total) in enumerate(lines)
    ]
    subtotal = sum(item.line_total_cents for item in items)
    order = models.Order(
        status=status,
        channel=channel,
        subtotal_cents=subtotal,
        delivery_fee_cents=delivery_fee,
        total_cents=subtotal + delivery_fee,
        created_at=created_at,
        updated_at=created_at,
        items=items,
    )
    db.add(order)
    db.commit()
    return order


@pytest.fixture()
def sales(db_session: Session) -> Session:
    _order(
        db_session,
        datetime(2026, 3, 10, 9, 0),
        OrderStatus.pending,
        OrderChannel.takeaway,
        [("Yassa Poulet", 1, 3000), ("Bissap", 1, 500)],
    )
    _order(
        db_session,
        datetime(2026, 3, 10, 11, 0),
        OrderStatus.completed,
        OrderChannel.delivery,
        [("Yassa Poulet", 2, 6000)],
        delivery_fee=1000,
    )
    _order(
        db_session,
        datetime(2026, 3, 10, 12, 0),
        OrderStatus.cancelled,
        OrderChannel.dine_in,
        [("Bissap", 10, 5000)],
    )
    _order(
        db_session,
        datetime(2026, 3, 9, 20, 0),
        OrderStatus.ready,
        OrderChannel.dine_in,
        [("Bissap", 4, 2000)],
    )
    _order(
        db_session,
        datetime(2026, 3, 1, 12, 0),
        OrderStatus.completed,
        OrderChannel.takeaway,
        [("Thiakry", 1, 1500)],
    )
    return db_session


def test_window_start_counts_whole_days() -> None:
    assert reports.window_start(1, NOW) == datetime(2026, 3, 10)
    assert reports.window_start(7, NOW) == datetime(2026, 3, 4)


def test_daily_revenue_fills_empty_days(sales: Session) -> None:
    rows = reports.daily_revenue(sales, days=3, now=NOW)
    assert rows == [
        {"day": date(2026, 3, 8), "revenue_cents": 0, "orders": 0},
        {"day": date(2026, 3, 9), "revenue_cents": 2000, "orders": 1},
        {"day": date(2026, 3, 10), "revenue_cents": 10500, "orders": 2},
    ]


def test_popular_items_ignore_cancelled_orders(sales: Session) -> None:
    month = reports.popular_items(sales, limit=10, days=30, now=NOW)
    assert month == [
        {"name": "Bissap", "quantity": 5, "revenue_cents": 2500},
        {"name": "Yassa Poulet", "quantity": 3, "revenue_cents": 9000},
        {"name": "Thiakry", "quantity": 1, "revenue_cents": 1500},
    ]
    assert [row["name"] for row in reports.popular_items(sales, limit=1, now=NOW)] == ["Bissap"]

    today = reports.popular_items(sales, days=1, now=NOW)
    assert [(row["name"], row["quantity"]) for row in today] == [
        ("Yassa Poulet", 3),
        ("Bissap", 1),
    ]


def test_channel_distribution_reports_every_channel(sales: Session) -> None:
    shares = {row["channel"]: row for row in reports.channel_distribution(sales, now=NOW)}
    assert shares[OrderChannel.dine_in]["orders"] == 1
    assert shares[OrderChannel.takeaway] == {
        "channel": OrderChannel.takeaway,
        "orders": 2,
        "revenue_cents": 5000,
    }
    assert shares[OrderChannel.delivery]["revenue_cents"] == 7000

    quiet = reports.channel_distribution(sales, days=1, now=datetime(2026, 4, 30))
    assert [row["orders"] for row in quiet] == [0, 0, 0]


def test_summary_by_period(sales: Session) -> None:
    day = reports.summary(sales, ReportPeriod.day, now=NOW)
    assert day == {
        "period": ReportPeriod.day,
        "revenue_cents": 10500,
        "orders": 2,
        "average_order_cents": 5250,
        "completed_orders": 1,
        "open_orders": 1,
        "cancelled_orders": 1,
    }

    month = reports.summary(sales, ReportPeriod.month, now=NOW)
    assert month["revenue_cents"] == 14000
    assert month["orders"] == 4
    assert month["average_order_cents"] == 3500
    assert month["open_orders"] == 2


def test_summary_without_orders(db_session: Session) -> None:
    empty = reports.summary(db_session, ReportPeriod.week, now=NOW)
    assert empty["orders"] == 0
    assert empty["average_order_cents"] == 0


def test_order_analytics(sales: Session) -> None:
    assert reports.order_analytics(sales, now=NOW) == {
        "today": {"orders": 2, "revenue_cents": 10500},
        "week": {"orders": 3, "revenue_cents": 12500},
        "month": {"orders": 4, "revenue_cents": 14000},
    }


def test_stock_analytics(db_session: Session) -> None:
    make_ingredient(db_session, "fish", quantity=10, reorder_threshold=2, unit_cost_cents=200)
    make_ingredient(db_session, "oil", quantity=1, reorder_threshold=5, unit_cost_cents=10)
    make_ingredient(db_session, "old", quantity=50, unit_cost_cents=100, is_active=False)
    db_session.add(
        models.StockItem(name="Water", quantity_on_hand=6, reorder_threshold=6, unit_cost_cents=300)
    )
    db_session.commit()

    assert reports.stock_analytics(db_session) == {
        "ingredients": {"total": 2, "low_stock": 1, "value_cents": 2010},
        "stock_items": {"total": 1, "low_stock": 1, "value_cents": 1800},
        "value_cents": 3810,
    }

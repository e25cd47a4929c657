"""Sales and stock figures for the back office.

Revenue always excludes cancelled orders. Windows are counted in whole UTC
days ending today.
"""
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import models
from ..models import OrderChannel, OrderStatus, ReportPeriod, utcnow
from .orders import TERMINAL_STATUSES

PERIOD_DAYS = {ReportPeriod.day: 1, ReportPeriod.week: 7, ReportPeriod.month: 30}


def window_start(days: int, now: Optional[datetime] = None) -> datetime:
    today = (now or utcnow()).date()
    return datetime.combine(today - timedelta(days=days - 1), time.min)


def _revenue_orders(db: Session, since: datetime):
    return db.query(models.Order).filter(
        models.Order.created_at >= since,
        models.Order.status != OrderStatus.cancelled,
    )


def daily_revenue(db: Session, days: int = 30, now: Optional[datetime] = None) -> List[dict]:
    since = window_start(days, now)
    buckets: Dict[date, dict] = {}
    for offset in range(days):
        day = since.date() + timedelta(days=offset)
        buckets[day] = {"day": day, "revenue_cents": 0, "orders": 0}
    for order in _revenue_orders(db, since):
        bucket = buckets.get(order.created_at.date())
        if bucket is None:
            continue
        bucket["revenue_cents"] += order.total_cents
        bucket["orders"] += 1
    return list(buckets.values())


def popular_items(
    db: Session, limit: int = 10, days: int = 30, now: Optional[datetime] = None
) -> List[dict]:
    quantity = func.sum(models.OrderItem.quantity)
    rows = (
        db.query(
            models.OrderItem.item_name,
            quantity,
            func.sum(models.OrderItem.line_total_cents),
        )
        .join(models.Order, models.OrderItem.order_id == models.Order.id)
        .filter(
            models.Order.created_at >= window_start(days, now),
            models.Order.status != OrderStatus.cancelled,
        )
        .group_by(models.OrderItem.item_name)
        .order_by(quantity.desc(), models.OrderItem.item_name)
        .limit(limit)
        .all()
    )
    return [
        {"name": name, "quantity": int(qty), "revenue_cents": int(revenue)}
        for name, qty, revenue in rows
    ]


def channel_distribution(
    db: Session, days: int = 30, now: Optional[datetime] = None
) -> List[dict]:
    rows = (
        db.query(
            models.Order.channel,
            func.count(models.Order.id),
            func.sum(models.Order.total_cents),
        )
        .filter(
            models.Order.created_at >= window_start(days, now),
            models.Order.status != OrderStatus.cancelled,
        )
        .group_by(models.Order.channel)
        .all()
    )
    found = {channel: (count, revenue) for channel, count, revenue in rows}
    # Every channel is reported, including the ones with no orders.
    shares = []
    for channel in OrderChannel:
        count, revenue = found.get(channel, (0, 0))
        shares.append({"channel": channel, "orders": count, "revenue_cents": int(revenue or 0)})
    return shares


def summary(
    db: Session, period: ReportPeriod = ReportPeriod.month, now: Optional[datetime] = None
) -> dict:
    since = window_start(PERIOD_DAYS[period], now)
    counts = dict(
        db.query(models.Order.status, func.count(models.Order.id))
        .filter(models.Order.created_at >= since)
        .group_by(models.Order.status)
        .all()
    )
    revenue = (
        db.query(func.coalesce(func.sum(models.Order.total_cents), 0))
        .filter(
            models.Order.created_at >= since,
            models.Order.status != OrderStatus.cancelled,
        )
        .scalar()
    )
    cancelled = counts.get(OrderStatus.cancelled, 0)
    orders = sum(counts.values()) - cancelled
    return {
        "period": period,
        "revenue_cents": int(revenue),
        "orders": orders,
        "average_order_cents": round(revenue / orders) if orders else 0,
        "completed_orders": counts.get(OrderStatus.completed, 0),
        "open_orders": sum(
            count for status, count in counts.items() if status not in TERMINAL_STATUSES
        ),
        "cancelled_orders": cancelled,
    }


def order_analytics(db: Session, now: Optional[datetime] = None) -> dict:
    totals = {}
    for label, period in (
        ("today", ReportPeriod.day),
        ("week", ReportPeriod.week),
        ("month", ReportPeriod.month),
    ):
        count, revenue = (
            db.query(
                func.count(models.Order.id),
                func.coalesce(func.sum(models.Order.total_cents), 0),
            )
            .filter(
                models.Order.created_at >= window_start(PERIOD_DAYS[period], now),
                models.Order.status != OrderStatus.cancelled,
            )
            .one()
        )
        totals[label] = {"orders": count, "revenue_cents": int(revenue)}
    return totals


def _stock_group(db: Session, model) -> dict:
    rows = db.query(model).filter(model.is_active == True).all()
    return {
        "total": len(rows),
        "low_stock": sum(1 for row in rows if row.quantity_on_hand <= row.reorder_threshold),
        "value_cents": sum(row.quantity_on_hand * row.unit_cost_cents for row in rows),
    }


def stock_analytics(db: Session) -> dict:
    ingredients = _stock_group(db, models.Ingredient)
    stock_items = _stock_group(db, models.StockItem)
    return {
        "ingredients": ingredients,
        "stock_items": stock_items,
        "value_cents": ingredients["value_cents"] + stock_items["value_cents"],
    }

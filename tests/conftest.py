from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from tableside import models
from tableside.db import Base, get_db
from tableside.main import app
from tableside.models import Role
from tableside.permissions import Actor


@pytest.fixture()
def db_session() -> Session:
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def client(db_session: Session) -> TestClient:
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


ADMIN = Actor(user_id=1, role=Role.admin)
CASHIER = Actor(user_id=2, role=Role.cashier)
CHEF = Actor(user_id=3, role=Role.chef)
SERVER = Actor(user_id=4, role=Role.server)
CUSTOMER = Actor(user_id=5, role=Role.customer)


def make_menu_item(db: Session, name="Thiebou Dieune", price_cents=3500, **extra) -> models.MenuItem:
    item = models.MenuItem(name=name, category="Plats", price_cents=price_cents, **extra)
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def make_table(db: Session, number=1, token=None, **extra) -> models.RestaurantTable:
    table = models.RestaurantTable(
        table_number=number,
        label=f"Table {number}",
        access_token=token or f"table-token-{number}",
        **extra,
    )
    db.add(table)
    db.commit()
    db.refresh(table)
    return table


def make_ingredient(db: Session, name="fish", quantity=10, **extra) -> models.Ingredient:
    ingredient = models.Ingredient(
        name=name, quantity_on_hand=quantity, initial_quantity=quantity, **extra
    )
    db.add(ingredient)
    db.commit()
    db.refresh(ingredient)
    return ingredient


def add_recipe(db: Session, menu_item, ingredient, per_unit: int) -> models.RecipeIngredient:
    entry = models.RecipeIngredient(
        menu_item_id=menu_item.id, ingredient_id=ingredient.id, quantity_per_unit=per_unit
    )
    db.add(entry)
    db.commit()
    return entry

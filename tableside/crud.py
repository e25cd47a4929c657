import logging

from sqlalchemy.orm import Session

from . import auth, models
from .config import SUPER_ADMIN_EMAIL, SUPER_ADMIN_PASSWORD
from .models import Role

logger = logging.getLogger(__name__)


def get_user(db: Session, user_id: int):
    return db.query(models.User).filter(models.User.id == user_id).first()


def get_user_by_email(db: Session, email: str):
    return db.query(models.User).filter(models.User.email == email.lower()).first()


def list_users(db: Session):
    return db.query(models.User).order_by(models.User.email).all()


def create_user(
    db: Session,
    email: str,
    password: str,
    full_name: str = "",
    phone=None,
    role: Role = Role.customer,
):
    user = models.User(
        email=email.lower(),
        full_name=full_name,
        phone=phone,
        password_hash=auth.get_password_hash(password),
        role=role,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def set_user_role(db: Session, user: models.User, role: Role):
    user.role = role
    db.commit()
    db.refresh(user)
    logger.info("user %s is now %s", user.id, role.value)
    return user


def delete_user(db: Session, user: models.User):
    user_id = user.id
    # Orders, movements and requests outlive the account.
    for column in (
        models.Order.customer_id,
        models.Order.validated_by,
        models.StockMovement.performed_by,
        models.IngredientRequest.requested_by,
        models.IngredientRequest.processed_by,
    ):
        db.query(column.class_).filter(column == user_id).update(
            {column: None}, synchronize_session=False
        )
    db.delete(user)
    db.commit()
    logger.info("user %s deleted", user_id)


def ensure_super_admin(db: Session, email=SUPER_ADMIN_EMAIL, password=SUPER_ADMIN_PASSWORD):
    if not email or not password:
        return None
    existing = db.query(models.User).filter(models.User.role == Role.super_admin).first()
    if existing:
        return existing
    user = get_user_by_email(db, email)
    if user:
        return set_user_role(db, user, Role.super_admin)
    logger.info("creating bootstrap super admin")
    return create_user(db, email, password, full_name="Super Admin", role=Role.super_admin)


def authenticate_user(db: Session, email: str, password: str):
    user = get_user_by_email(db, email)
    if not user:
        return None
    if not auth.verify_password(password, user.password_hash):
        return None
    return user


def list_menu(db: Session, available_only: bool = False):
    query = db.query(models.MenuItem)
    if available_only:
        query = query.filter(models.MenuItem.is_available == True)
    return query.order_by(models.MenuItem.category, models.MenuItem.name).all()


def create_menu_item(db: Session, item_data):
    item = models.MenuItem(**item_data)
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def update_menu_item(db: Session, item: models.MenuItem, item_data):
    for key, value in item_data.items():
        setattr(item, key, value)
    db.commit()
    db.refresh(item)
    return item


def delete_menu_item(db: Session, item: models.MenuItem):
    # Past order lines keep their name and price snapshots.
    db.query(models.OrderItem).filter(models.OrderItem.menu_item_id == item.id).update(
        {models.OrderItem.menu_item_id: None}, synchronize_session=False
    )
    db.query(models.StockItem).filter(models.StockItem.menu_item_id == item.id).update(
        {models.StockItem.menu_item_id: None}, synchronize_session=False
    )
    db.delete(item)
    db.commit()


def get_menu_item(db: Session, item_id: int):
    return db.query(models.MenuItem).filter(models.MenuItem.id == item_id).first()


def seed_menu(db: Session):
    if db.query(models.MenuItem).count() > 0:
        return
    samples = [
        {
            "name": "Thiebou Dieune",
            "description": "Broken rice, white fish, cassava and cabbage in tomato sauce.",
            "category": "Plats",
            "price_cents": 3500,
            "price_small_cents": 2500,
        },
        {
            "name": "Yassa Poulet",
            "description": "Chicken marinated in lemon and onions.",
            "category": "Plats",
            "price_cents": 3000,
        },
        {
            "name": "Thiakry",
            "description": "Millet couscous with sweet yoghurt.",
            "category": "Desserts",
            "price_cents": 1000,
        },
        {
            "name": "Bissap",
            "description": "Chilled hibiscus juice.",
            "category": "Boissons",
            "price_cents": 500,
        },
    ]
    for item in samples:
        create_menu_item(db, item)

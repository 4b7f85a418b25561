from __future__ import annotations

from sqlalchemy.orm import Session

from restobot.core.time_utils import isoformat
from restobot.models.menu_item import MENU_CATEGORIES, MenuItem

MAX_LIST_ROWS = 10


def category_slug(category: str) -> str:
    return "_".join((category or "").strip().lower().split())


def _category_sort_key(category: str) -> tuple[int, str]:
    try:
        return MENU_CATEGORIES.index(category), category
    except ValueError:
        return len(MENU_CATEGORIES), category


def list_available_categories(db: Session) -> list[str]:
    rows = (
        db.query(MenuItem.category)
        .filter(MenuItem.is_available.is_(True))
        .distinct()
        .all()
    )
    return sorted((row[0] for row in rows if row[0]), key=_category_sort_key)


def resolve_category(db: Session, slug: str) -> str | None:
    wanted = category_slug(slug)
    for category in list_available_categories(db):
        if category_slug(category) == wanted:
            return category
    return None


def list_category_items(db: Session, category: str, *, limit: int = MAX_LIST_ROWS) -> list[MenuItem]:
    return (
        db.query(MenuItem)
        .filter(MenuItem.category == category, MenuItem.is_available.is_(True))
        .order_by(MenuItem.name.asc(), MenuItem.id.asc())
        .limit(limit)
        .all()
    )


def get_menu_item(db: Session, item_id: int | None) -> MenuItem | None:
    if item_id is None:
        return None
    return db.query(MenuItem).filter(MenuItem.id == item_id).first()


def existing_item_ids(db: Session, item_ids) -> set[int]:
    ids = {int(item_id) for item_id in item_ids if item_id is not None}
    if not ids:
        return set()
    rows = db.query(MenuItem.id).filter(MenuItem.id.in_(ids)).all()
    return {row[0] for row in rows}


def live_cart_lines(db: Session, cart: list[dict] | None) -> list[dict]:
    """Cart lines whose menu item still exists; prices stay as they were when added."""
    lines = [line for line in (cart or []) if isinstance(line, dict) and line.get("item_id") is not None]
    known = existing_item_ids(db, (line["item_id"] for line in lines))
    return [line for line in lines if int(line["item_id"]) in known]


def line_total(line: dict) -> int:
    return int(line.get("quantity") or 0) * int(line.get("unit_price_cents") or 0)


def cart_total(lines: list[dict]) -> int:
    return sum(line_total(line) for line in lines)


def menu_item_to_dict(item: MenuItem) -> dict:
    return {
        "id": item.id,
        "name": item.name,
        "description": item.description,
        "category": item.category,
        "price_cents": item.price_cents,
        "image_url": item.image_url,
        "is_available": bool(item.is_available),
        "is_veg": bool(item.is_veg),
        "preparation_time_minutes": item.preparation_time_minutes,
        "created_at": isoformat(item.created_at),
        "updated_at": isoformat(item.updated_at),
    }

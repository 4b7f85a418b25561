from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from restobot.core.database import get_db
from restobot.core.time_utils import utcnow
from restobot.models.menu_item import MenuItem
from restobot.services.catalog import menu_item_to_dict, resolve_category
from restobot.services.order_events import emit_menu_updated

router = APIRouter(prefix="/api", tags=["menu"])


class MenuItemOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    category: str
    price_cents: int
    image_url: Optional[str] = None
    is_available: bool
    is_veg: bool
    preparation_time_minutes: int
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class MenuItemCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    category: str = Field(..., min_length=1, max_length=60)
    price_cents: int = Field(..., ge=0)
    image_url: Optional[str] = None
    is_available: bool = True
    is_veg: bool = True
    preparation_time_minutes: int = Field(20, ge=0)


class MenuItemUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = None
    category: Optional[str] = Field(None, min_length=1, max_length=60)
    price_cents: Optional[int] = Field(None, ge=0)
    image_url: Optional[str] = None
    is_available: Optional[bool] = None
    is_veg: Optional[bool] = None
    preparation_time_minutes: Optional[int] = Field(None, ge=0)


def _get_item_or_404(db: Session, item_id: int) -> MenuItem:
    item = db.query(MenuItem).filter(MenuItem.id == item_id).first()
    if not item:
        raise HTTPException(status_code=404, detail="Menu item not found")
    return item


@router.get("/menu", response_model=List[MenuItemOut])
def list_menu_items(
    available_only: bool = Query(False),
    db: Session = Depends(get_db),
):
    query = db.query(MenuItem)
    if available_only:
        query = query.filter(MenuItem.is_available.is_(True))
    items = query.order_by(MenuItem.category.asc(), MenuItem.name.asc()).all()
    return [menu_item_to_dict(item) for item in items]


@router.get("/menu/category/{category}", response_model=List[MenuItemOut])
def list_menu_items_by_category(category: str, db: Session = Depends(get_db)):
    resolved = resolve_category(db, category) or category
    items = (
        db.query(MenuItem)
        .filter(MenuItem.category == resolved, MenuItem.is_available.is_(True))
        .order_by(MenuItem.name.asc())
        .all()
    )
    return [menu_item_to_dict(item) for item in items]


@router.post("/menu", response_model=MenuItemOut, status_code=201)
def create_menu_item(payload: MenuItemCreate, db: Session = Depends(get_db)):
    now = utcnow()
    item = MenuItem(**payload.model_dump(), created_at=now, updated_at=now)
    db.add(item)
    db.commit()
    db.refresh(item)
    data = menu_item_to_dict(item)
    emit_menu_updated("created", data, now=now)
    return data


@router.put("/menu/{item_id}", response_model=MenuItemOut)
def update_menu_item(item_id: int, payload: MenuItemUpdate, db: Session = Depends(get_db)):
    item = _get_item_or_404(db, item_id)
    changes = payload.model_dump(exclude_unset=True)
    for field, value in changes.items():
        if value is None and field not in {"description", "image_url"}:
            continue
        setattr(item, field, value)
    now = utcnow()
    item.updated_at = now
    db.commit()
    db.refresh(item)
    data = menu_item_to_dict(item)
    emit_menu_updated("updated", data, now=now)
    return data


@router.delete("/menu/{item_id}")
def delete_menu_item(item_id: int, db: Session = Depends(get_db)):
    item = _get_item_or_404(db, item_id)
    data = menu_item_to_dict(item)
    db.delete(item)
    db.commit()
    emit_menu_updated("deleted", data)
    return {"ok": True, "id": item_id}

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from restobot.core.database import get_db
from restobot.core.time_utils import utcnow
from restobot.models.order import Order
from restobot.services.order_events import order_to_dict
from restobot.services.orders import (
    OrderStatusError,
    get_order,
    list_orders,
    order_stats,
    refund_order,
    update_order_status,
)

router = APIRouter(prefix="/api", tags=["orders"])


class OrderStatusUpdate(BaseModel):
    status: str


def _get_order_or_404(db: Session, order_id: int) -> Order:
    order = get_order(db, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.get("/orders")
def list_orders_route(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return [order_to_dict(order) for order in list_orders(db, status=status, limit=limit)]


# declared before /orders/{order_id} so "stats" is not parsed as an id
@router.get("/orders/stats")
def get_order_stats(db: Session = Depends(get_db)):
    return order_stats(db, now=utcnow())


@router.get("/orders/{order_id}")
def get_order_route(order_id: int, db: Session = Depends(get_db)):
    return order_to_dict(_get_order_or_404(db, order_id))


@router.put("/orders/{order_id}/status")
def update_order_status_route(order_id: int, payload: OrderStatusUpdate, db: Session = Depends(get_db)):
    order = _get_order_or_404(db, order_id)
    try:
        order = update_order_status(db, order, status=payload.status.strip().lower(), now=utcnow())
    except OrderStatusError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return order_to_dict(order)


@router.post("/orders/{order_id}/refund")
def refund_order_route(order_id: int, db: Session = Depends(get_db)):
    order = _get_order_or_404(db, order_id)
    if not refund_order(db, order, now=utcnow()):
        raise HTTPException(status_code=400, detail="Only completed payments can be refunded")
    return order_to_dict(order)

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from restobot.core.database import get_db
from restobot.core.time_utils import utcnow
from restobot.models.reservation import Reservation
from restobot.services.order_events import reservation_to_dict
from restobot.services.reservations import ReservationStatusError, update_reservation_status

router = APIRouter(prefix="/api", tags=["reservations"])


class ReservationStatusUpdate(BaseModel):
    status: str
    table_assignment: Optional[str] = Field(None, max_length=20)


@router.get("/reservations")
def list_reservations(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    query = db.query(Reservation)
    if status:
        query = query.filter(Reservation.status == status)
    reservations = query.order_by(Reservation.date.asc(), Reservation.id.asc()).limit(limit).all()
    return [reservation_to_dict(reservation) for reservation in reservations]


@router.put("/reservations/{reservation_id}/status")
def update_reservation_status_route(
    reservation_id: int,
    payload: ReservationStatusUpdate,
    db: Session = Depends(get_db),
):
    reservation = db.query(Reservation).filter(Reservation.id == reservation_id).first()
    if not reservation:
        raise HTTPException(status_code=404, detail="Reservation not found")
    try:
        reservation = update_reservation_status(
            db,
            reservation,
            status=payload.status.strip().lower(),
            table_assignment=payload.table_assignment,
            now=utcnow(),
        )
    except ReservationStatusError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return reservation_to_dict(reservation)

import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..config import Settings, get_settings
from ..database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/inventory", tags=["Inventory"])


def _rfc3339(value) -> str:
    return crud.as_utc(value).isoformat().replace("+00:00", "Z")


@router.post("/check")
def check_stock(body: schemas.StockCheckRequest, db: Session = Depends(get_db)) -> Dict:
    items = crud.check_items_stock(db, body.items)
    return {"available": all(i["isAvailable"] for i in items), "items": items}


@router.post("/reserve")
def reserve_stock(
    body: schemas.ReservationRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Dict:
    """Hold the cart's stock for the user while they pay.

    The hold is advisory: it only counts against other reservations, it does
    not lock the variant rows beyond this request.
    """
    if not body.user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not authenticated")

    try:
        result = crud.create_reservations(
            db,
            user_id=body.user_id,
            items=body.items,
            ttl_minutes=settings.reservation_ttl_minutes,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if not result["reserved"]:
        unavailable = [i for i in result["items"] if not i["isAvailable"]]
        logger.info("Reservation refused for user %s: %s", body.user_id, unavailable)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Insufficient stock for variants: "
            + ", ".join(f"{i['variantId']} (available {i['availableStock']})" for i in unavailable),
        )

    return {
        "reserved": True,
        "reservedUntil": _rfc3339(result["expires_at"]),
        "items": result["items"],
    }


@router.post("/release")
def release_stock(body: schemas.ReleaseRequest, db: Session = Depends(get_db)) -> Dict:
    if not body.user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not authenticated")
    released = crud.release_reservations(db, user_id=body.user_id)
    return {"released": released}


@router.post("/sweep")
def sweep_expired(db: Session = Depends(get_db)) -> Dict:
    deleted = crud.purge_expired_reservations(db)
    if deleted:
        logger.info("Swept %d expired reservations", deleted)
    return {"deleted": deleted}

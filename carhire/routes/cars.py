# Car listing endpoints.
# Car metadata is owned by the fleet service; these routes only read it and attach availability.
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..db import get_db
from .. import directory, models, schemas

# Router namespace for car APIs
router = APIRouter()


@router.get("/cars", response_model=List[schemas.CarWithAvailability])
def list_cars(
    company_id: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
):
    """
    List cars with their availability for today.

    Optionally filtered by owning company. Ordered by newest first.
    """
    q = db.query(models.Car)
    if company_id is not None:
        q = q.filter(models.Car.company_id == company_id)
    items = q.order_by(models.Car.id.desc()).all()
    return directory.attach_availability(db, items)


@router.get("/cars/{car_id}", response_model=schemas.CarWithAvailability)
def get_car(car_id: int, db: Session = Depends(get_db)):
    car = directory.get_car(db, car_id)
    return directory.attach_availability(db, [car])[0]

"""
Eligibility API - certification envelope of an event

Provides:
- GET /events/{event_id}/eligibility: time window, geofence and visibility
  for "now" and an optional client position
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from presence_cert.db.models import Event, EventRegistration
from presence_cert.dependencies import get_db
from presence_cert.schemas import EligibilityResponse
from presence_cert.services.eligibility_service import (
    EventEnvelope, Position, PositionReading, eligibility_evaluator
)
from presence_cert.timeutils import utc_now

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/events", tags=["Eligibility"])


@router.get("/{event_id}/eligibility", response_model=EligibilityResponse)
async def get_eligibility(
    event_id: int,
    latitude: Optional[float] = Query(None, ge=-90, le=90, description="Client latitude"),
    longitude: Optional[float] = Query(None, ge=-180, le=180, description="Client longitude"),
    user_id: Optional[int] = Query(None, description="Registrant, to keep certified events visible"),
    db: Session = Depends(get_db)
):
    """
    Evaluate whether certification can start now.

    Without a position the radius is unknown (location_status=loading),
    never false.
    """
    event = db.query(Event).filter(Event.id == event_id).first()
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")

    certified = False
    if user_id is not None:
        registration = db.query(EventRegistration).filter(
            EventRegistration.event_id == event_id,
            EventRegistration.user_id == user_id
        ).first()
        certified = bool(registration and registration.attended_at is not None)

    now = utc_now()
    reading = None
    if latitude is not None and longitude is not None:
        reading = PositionReading.available(Position(latitude=latitude, longitude=longitude, captured_at=now))

    result = eligibility_evaluator.evaluate(
        EventEnvelope.from_event(event), now, reading, certified=certified
    )
    return EligibilityResponse(event_id=event_id, **result.to_dict())

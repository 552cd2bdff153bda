"""
Eligibility Service - certification envelope evaluation

Decides whether "now" and "here" allow a registrant to start a presence
certification for an event:
- Time window: [start - lead, end], inclusive on both ends
- Geofence: great-circle distance to the event coordinate <= radius
- Visibility: an ended event is hidden unless the registrant already certified

Pure and deterministic: the clock and the position are inputs, and every
combination of inputs maps to a result (never an exception).
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from presence_cert.config import settings
from presence_cert.timeutils import as_utc

EARTH_RADIUS_METERS = 6371000.0


class TimeStatus(str, Enum):
    BEFORE_WINDOW = "before_window"
    OPEN = "open"
    ENDED = "ended"


class PositionState(str, Enum):
    AVAILABLE = "available"
    LOADING = "loading"
    DENIED = "denied"
    ERROR = "error"


class LocationStatus(str, Enum):
    WITHIN_RADIUS = "within_radius"
    TOO_FAR = "too_far"
    LOADING = "loading"
    DENIED = "denied"
    ERROR = "error"
    STALE = "stale"
    NO_EVENT_COORDINATES = "no_event_coordinates"


class Visibility(str, Enum):
    OFFERED = "offered"
    HIDDEN = "hidden"


@dataclass(frozen=True)
class EventEnvelope:
    start_time: datetime
    end_time: datetime
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_coordinate(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @classmethod
    def from_event(cls, event) -> "EventEnvelope":
        return cls(
            start_time=as_utc(event.start_date),
            end_time=as_utc(event.end_date),
            latitude=event.latitude,
            longitude=event.longitude,
        )


@dataclass(frozen=True)
class Position:
    latitude: float
    longitude: float
    captured_at: Optional[datetime] = None
    accuracy_meters: Optional[float] = None


@dataclass(frozen=True)
class PositionReading:
    """What the position source currently knows about the caller."""
    state: PositionState
    position: Optional[Position] = None
    message: Optional[str] = None

    @classmethod
    def available(cls, position: Position) -> "PositionReading":
        return cls(state=PositionState.AVAILABLE, position=position)

    @classmethod
    def loading(cls) -> "PositionReading":
        return cls(state=PositionState.LOADING)


@dataclass(frozen=True)
class EligibilityResult:
    is_within_time_window: bool
    is_within_radius: Optional[bool]   # None = unknown
    is_eligible: bool
    time_status: TimeStatus
    location_status: LocationStatus
    visibility: Visibility
    distance_meters: Optional[float]
    window_opens_at: datetime
    reason: Optional[str]

    @property
    def is_hidden(self) -> bool:
        return self.visibility == Visibility.HIDDEN

    def to_dict(self) -> dict:
        return {
            "is_eligible": self.is_eligible,
            "is_within_time_window": self.is_within_time_window,
            "is_within_radius": self.is_within_radius,
            "time_status": self.time_status.value,
            "location_status": self.location_status.value,
            "visibility": self.visibility.value,
            "distance_meters": round(self.distance_meters, 1) if self.distance_meters is not None else None,
            "window_opens_at": self.window_opens_at.isoformat(),
            "reason": self.reason,
        }


def great_circle_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance between two coordinates, in meters."""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (math.sin(delta_lat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) *
         math.sin(delta_lon / 2) ** 2)
    # Rounding can push a just past 1 for near-antipodal points
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


class EligibilityEvaluator:
    """
    Evaluates an event's certification envelope.

    The radius, window lead time and position staleness limit are fixed per
    deployment, never per event.
    """

    def __init__(
        self,
        radius_meters: Optional[float] = None,
        open_minutes_before_start: Optional[int] = None,
        position_max_age_seconds: Optional[int] = None
    ):
        self.radius_meters = (
            radius_meters if radius_meters is not None
            else settings.CERTIFICATION_RADIUS_METERS
        )
        self.window_lead = timedelta(minutes=(
            open_minutes_before_start if open_minutes_before_start is not None
            else settings.CERTIFICATION_OPEN_MINUTES_BEFORE_START
        ))
        self.position_max_age = timedelta(seconds=(
            position_max_age_seconds if position_max_age_seconds is not None
            else settings.POSITION_MAX_AGE_SECONDS
        ))

    def evaluate(
        self,
        envelope: EventEnvelope,
        now: datetime,
        reading: Optional[PositionReading],
        *,
        certified: bool = False
    ) -> EligibilityResult:
        """
        Evaluate eligibility.

        Args:
            envelope: Event time window and coordinate
            now: Current time (UTC-aware or naive UTC)
            reading: Latest position reading, None when no request was made yet
            certified: Whether the registration already holds attended_at

        Returns:
            EligibilityResult; is_eligible requires both the time window and
            the radius to hold.
        """
        now = as_utc(now)
        start = as_utc(envelope.start_time)
        end = as_utc(envelope.end_time)
        window_opens_at = start - self.window_lead

        if now < window_opens_at:
            time_status = TimeStatus.BEFORE_WINDOW
        elif now > end:
            time_status = TimeStatus.ENDED
        else:
            time_status = TimeStatus.OPEN
        in_window = time_status == TimeStatus.OPEN

        location_status, distance = self._evaluate_location(envelope, now, reading)
        if location_status == LocationStatus.WITHIN_RADIUS:
            within_radius: Optional[bool] = True
        elif location_status == LocationStatus.TOO_FAR:
            within_radius = False
        else:
            within_radius = None

        if not envelope.has_coordinate:
            visibility = Visibility.HIDDEN
        elif time_status == TimeStatus.ENDED and not certified:
            visibility = Visibility.HIDDEN
        else:
            visibility = Visibility.OFFERED

        is_eligible = in_window and within_radius is True and visibility == Visibility.OFFERED

        return EligibilityResult(
            is_within_time_window=in_window,
            is_within_radius=within_radius,
            is_eligible=is_eligible,
            time_status=time_status,
            location_status=location_status,
            visibility=visibility,
            distance_meters=distance,
            window_opens_at=window_opens_at,
            reason=None if is_eligible else self._reason(
                time_status, location_status, distance, window_opens_at, reading
            ),
        )

    def _evaluate_location(self, envelope, now, reading):
        if not envelope.has_coordinate:
            return LocationStatus.NO_EVENT_COORDINATES, None
        if reading is None or reading.state == PositionState.LOADING:
            return LocationStatus.LOADING, None
        if reading.state == PositionState.DENIED:
            return LocationStatus.DENIED, None
        if reading.state == PositionState.ERROR or reading.position is None:
            return LocationStatus.ERROR, None

        position = reading.position
        if position.captured_at is not None and now - as_utc(position.captured_at) > self.position_max_age:
            return LocationStatus.STALE, None

        distance = great_circle_distance(
            envelope.latitude, envelope.longitude,
            position.latitude, position.longitude
        )
        if distance <= self.radius_meters:
            return LocationStatus.WITHIN_RADIUS, distance
        return LocationStatus.TOO_FAR, distance

    def _reason(self, time_status, location_status, distance, window_opens_at, reading) -> str:
        if location_status == LocationStatus.NO_EVENT_COORDINATES:
            return "This event has no location; presence certification is not offered."
        if time_status == TimeStatus.BEFORE_WINDOW:
            return f"Too early: certification opens at {window_opens_at.strftime('%H:%M')} UTC."
        if time_status == TimeStatus.ENDED:
            return "The event is over."
        if location_status == LocationStatus.TOO_FAR:
            return (
                f"Current distance: {distance / 1000:.1f} km. "
                f"You must be within {self.radius_meters:.0f} m of the venue."
            )
        if location_status == LocationStatus.DENIED:
            return (reading and reading.message) or "Location access was denied. Enable it in your browser or device settings."
        if location_status == LocationStatus.ERROR:
            return (reading and reading.message) or "Position unavailable. Check that location services are enabled."
        if location_status == LocationStatus.STALE:
            return "Your position is out of date. Refreshing location..."
        return "Locating you..."


# Singleton instance
eligibility_evaluator = EligibilityEvaluator()

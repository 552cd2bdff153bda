"""
Position tracking for the certification flow
"""
import asyncio
import logging
from typing import Callable, Optional

from presence_cert.config import settings
from presence_cert.flow.sensors import (
    LOCATION_PERMISSION_MESSAGE, PositionSource, SensorError, SensorPermissionError
)
from presence_cert.services.eligibility_service import Position, PositionReading, PositionState
from presence_cert.timeutils import utc_now

logger = logging.getLogger(__name__)


class PositionTracker:
    """
    Wraps a PositionSource with a bounded wait and explicit states.

    `reading` is None until the first refresh, LOADING while a request is in
    flight, then AVAILABLE, DENIED or ERROR. Concurrent refreshes share the
    single in-flight request.
    """

    def __init__(
        self,
        source: PositionSource,
        timeout: Optional[float] = None,
        clock: Callable = utc_now
    ):
        self.source = source
        self.timeout = timeout if timeout is not None else settings.POSITION_TIMEOUT_SECONDS
        self.clock = clock
        self.reading: Optional[PositionReading] = None
        self._inflight: Optional[asyncio.Task] = None

    @property
    def position(self) -> Optional[Position]:
        if self.reading and self.reading.state == PositionState.AVAILABLE:
            return self.reading.position
        return None

    async def refresh(self) -> PositionReading:
        if self._inflight is None or self._inflight.done():
            self.reading = PositionReading.loading()
            self._inflight = asyncio.ensure_future(self._acquire())
        return await asyncio.shield(self._inflight)

    async def _acquire(self) -> PositionReading:
        try:
            position = await asyncio.wait_for(self.source.current_position(), self.timeout)
        except SensorPermissionError:
            self.reading = PositionReading(PositionState.DENIED, message=LOCATION_PERMISSION_MESSAGE)
        except asyncio.TimeoutError:
            logger.info("Position request timed out")
            self.reading = PositionReading(
                PositionState.ERROR,
                message="Location request timed out. Try again somewhere with better reception."
            )
        except SensorError as e:
            logger.info(f"Position unavailable: {e}")
            self.reading = PositionReading(
                PositionState.ERROR,
                message="Position unavailable. Check that location services are enabled."
            )
        else:
            if position.captured_at is None:
                position = Position(
                    latitude=position.latitude,
                    longitude=position.longitude,
                    captured_at=self.clock(),
                    accuracy_meters=position.accuracy_meters
                )
            self.reading = PositionReading.available(position)
        return self.reading

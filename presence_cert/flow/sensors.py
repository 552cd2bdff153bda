"""
Sensor collaborators of the certification flow

The camera and the position source live on the participant's device. The
flow only sees these protocols: a capture source that opens a scoped camera
session yielding encoded stills, and a position source that resolves the
current coordinate once per request.
"""
from typing import AsyncContextManager, Protocol

from presence_cert.services.eligibility_service import Position


class SensorError(Exception):
    """The sensor failed for a reason the user cannot fix from settings."""


class SensorPermissionError(SensorError):
    """Access to the sensor was refused by the user or the platform."""


class SensorNotFoundError(SensorError):
    """The device has no such sensor."""


class CaptureSession(Protocol):
    async def capture_still(self) -> bytes:
        """Return one JPEG-encoded frame of the live stream."""
        ...


class CaptureSource(Protocol):
    def open(self) -> AsyncContextManager[CaptureSession]:
        """
        Start the camera stream. Leaving the context stops every track.

        Raises (on enter):
            SensorPermissionError, SensorNotFoundError, SensorError
        """
        ...


class PositionSource(Protocol):
    async def current_position(self) -> Position:
        """
        Resolve the device's current coordinate.

        Raises:
            SensorPermissionError, SensorError
        """
        ...


CAMERA_PERMISSION_MESSAGE = (
    "Camera access was denied. Allow the camera for this site in your browser "
    "or device settings, then try again."
)
CAMERA_MISSING_MESSAGE = "No camera was found on this device."
LOCATION_PERMISSION_MESSAGE = (
    "Location access was denied. Allow location for this site in your browser "
    "or device settings, then try again."
)

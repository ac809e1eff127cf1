"""Location sharing: turn a device watch into appended location samples."""
import asyncio
import logging
from collections import defaultdict
from typing import Callable, Optional

from errors import (
    InsecureContextError,
    PermissionDeniedError,
    PositionTimeoutError,
    TripConnectError,
    ValidationError,
)
from geolocation import Geolocation, GeolocationOptions, Position, WatchHandle, utcnow
from locations import TABLE
from models import Actor, Coordinates, LocationSample
from utils import validate_coordinates

logger = logging.getLogger(__name__)

SHARING_OPTIONS = GeolocationOptions(high_accuracy=True, timeout_ms=10000, max_sample_age_ms=1000)


class LocationIngest:
    """Appends one location_samples row per accepted device fix.

    Only one sharing session runs at a time. The caller owns the WatchHandle
    that start() returns and hands it back to stop().
    """

    def __init__(
        self,
        store,
        geolocation: Geolocation,
        actor: Optional[Actor],
        secure_context: bool,
        trip_id: Optional[str] = None,
        options: GeolocationOptions = SHARING_OPTIONS,
        on_message: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.geolocation = geolocation
        self.actor = actor
        self.secure_context = secure_context
        self.trip_id = trip_id
        self.options = options
        self.on_message = on_message
        self.last_error: Optional[str] = None
        self.samples_sent = 0
        self._handle: Optional[WatchHandle] = None
        self._locks = defaultdict(asyncio.Lock)

    @property
    def is_sharing(self) -> bool:
        return self._handle is not None and self._handle.active

    def _check_preconditions(self):
        if not self.secure_context:
            raise InsecureContextError("Location sharing requires HTTPS. Please use a secure connection.")
        if self.actor is None or not self.actor.id:
            raise PermissionDeniedError("Please sign in to share location")

    async def submit_sample(
        self,
        actor_id: str,
        coordinates,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
        trip_id: Optional[str] = None,
    ) -> LocationSample:
        """Insert exactly one new sample row. Never updates an existing row."""
        self._check_preconditions()
        if actor_id != self.actor.id:
            raise PermissionDeniedError("Actors can only share their own location")
        if isinstance(coordinates, Coordinates):
            coordinates = (coordinates.lat, coordinates.lon)
        if not validate_coordinates(coordinates):
            raise ValidationError(f"Invalid coordinates: {coordinates!r}")

        sample = LocationSample(
            actor_id=actor_id,
            role=self.actor.role,
            trip_id=trip_id,
            latitude=float(coordinates[0]),
            longitude=float(coordinates[1]),
            heading=heading,
            speed=speed,
            recorded_at=utcnow(),
        )
        # one write in flight per actor keeps samples in order in the store
        async with self._locks[actor_id]:
            row = await self.store.insert(TABLE, sample.model_dump(mode="json", exclude_none=True))
        self.samples_sent += 1
        return LocationSample(**row)

    def start(self) -> WatchHandle:
        self._check_preconditions()
        if self.is_sharing:
            return self._handle
        self.last_error = None
        self._handle = self.geolocation.watch_position(self._on_position, self._on_error, self.options)
        logger.info("Location sharing started for %s", self.actor.id)
        self._notify("Location sharing started")
        return self._handle

    def stop(self, handle: Optional[WatchHandle]) -> None:
        """Synchronous and safe to call any number of times."""
        if handle is None:
            return
        was_active = handle.active
        self.geolocation.clear_watch(handle)
        if self._handle is handle:
            self._handle = None
        if was_active:
            logger.info("Location sharing stopped for %s", self.actor.id if self.actor else None)
            self._notify("Location sharing stopped")

    async def _on_position(self, position: Position):
        try:
            await self.submit_sample(
                self.actor.id,
                (position.latitude, position.longitude),
                heading=position.heading,
                speed=position.speed,
                trip_id=self.trip_id,
            )
        except TripConnectError as e:
            logger.error("Failed to update location: %s", e)
            self._fail("Failed to update location")

    def _on_error(self, err: TripConnectError):
        if isinstance(err, PositionTimeoutError):
            logger.info("Position attempt timed out, still watching")
            return
        logger.warning("Geolocation error: %s", err)
        self._fail("Failed to get location")

    def _fail(self, message):
        self.last_error = message
        self._notify(message)
        self.stop(self._handle)

    def _notify(self, message):
        if self.on_message is not None:
            self.on_message(message)

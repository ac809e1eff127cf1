"""Live map: latest driver/passenger positions kept fresh by the change feed."""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from errors import TripConnectError
from geolocation import GeolocationOptions
from locations import LocationStore
from models import LocationSample, Profile, Role, Trip
from utils import format_departure

logger = logging.getLogger(__name__)

FIT_PADDING = 50
FIT_MAX_ZOOM = 15
USER_ZOOM = 15
PICKUP_RADIUS_M = 500
TRIPS_TOPIC = "trips"

COLORS = {
    "driver_moving": "#ff6b35",
    "driver": "#e74c3c",
    "passenger": "#f59e0b",
    "self": "#f59e0b",
    "pickup": "#059669",
    "destination": "#dc2626",
}


class PresenterState(str, Enum):
    IDLE = "idle"
    SUBSCRIBED = "subscribed"


@dataclass(frozen=True)
class Marker:
    key: str
    kind: str
    latitude: float
    longitude: float
    label: str
    color: str
    size: int = 14
    moving: bool = False


def is_moving(sample: LocationSample) -> bool:
    return sample.speed is not None and sample.speed > 0


class LiveMapPresenter:
    """Owns the in-memory marker view. Nothing else mutates it."""

    topics = (Role.DRIVER, Role.PASSENGER)

    def __init__(
        self,
        locations: LocationStore,
        feed,
        map_view,
        directory=None,
        ingest=None,
        show_drivers: bool = True,
        selected_trip: Optional[Trip] = None,
    ):
        self.locations = locations
        self.feed = feed
        self.map_view = map_view
        self.directory = directory
        self.ingest = ingest
        self.show_drivers = show_drivers
        self.selected_trip = selected_trip
        self.state = PresenterState.IDLE
        self.user_position: Optional[Tuple[float, float]] = None
        self.route: List[Tuple[float, float]] = []
        self.trips: List[Trip] = []
        self.profiles: Dict[str, Profile] = {}
        self._views: Dict[Role, Dict[str, LocationSample]] = {role: {} for role in self.topics}
        self._subscriptions = []
        self._refreshes = set()

    # ---------- lifecycle ----------

    async def mount(self):
        if not self.show_drivers or self.state is PresenterState.SUBSCRIBED:
            return
        self.state = PresenterState.SUBSCRIBED
        for topic in self.topics:
            self._subscriptions.append(self.feed.subscribe(topic.value, self._change_handler(topic)))
        if self.directory is not None:
            self._subscriptions.append(self.feed.subscribe(TRIPS_TOPIC, self._trips_handler))
        await self._load_context()
        await asyncio.gather(*(self.refresh(topic) for topic in self.topics))
        self.recenter()

    def unmount(self):
        """Synchronous and idempotent."""
        for sub in self._subscriptions:
            self.feed.unsubscribe(sub)
        self._subscriptions = []
        for task in list(self._refreshes):
            task.cancel()
        self._refreshes.clear()
        self.state = PresenterState.IDLE

    async def set_show_drivers(self, enabled: bool):
        self.show_drivers = enabled
        if enabled:
            await self.mount()
        else:
            self.unmount()

    # ---------- refresh ----------

    def _schedule(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._refreshes.add(task)
        task.add_done_callback(self._refreshes.discard)

    def _change_handler(self, topic: Role):
        def on_change(payload):
            self._schedule(self.refresh(topic))
        return on_change

    def _trips_handler(self, payload):
        self._schedule(self._load_context())

    async def refresh(self, topic: Role):
        try:
            latest = await self.locations.fetch_latest(topic)
        except TripConnectError as e:
            logger.warning("Error fetching %s locations: %s", topic.value, e)
            return
        if self.state is not PresenterState.SUBSCRIBED:
            return
        # whole-mapping swap; overlapping refreshes resolve as last-completed-wins
        self._views[topic] = latest

    async def _load_context(self):
        if self.directory is None:
            return
        try:
            trips = await self.directory.active_trips()
            profiles = {p.user_id: p for p in await self.directory.driver_profiles()}
        except TripConnectError as e:
            logger.warning("Error fetching trips for the map: %s", e)
            return
        self.trips, self.profiles = trips, profiles

    def latest(self, topic: Role) -> Dict[str, LocationSample]:
        return dict(self._views[topic])

    # ---------- viewport ----------

    def select_trip(self, trip: Optional[Trip], route: Sequence[Tuple[float, float]] = ()):
        self.selected_trip = trip
        self.route = list(route)
        if self.ingest is not None:
            self.ingest.trip_id = trip.id if trip else None
        self.recenter()

    async def update_user_position(self, position: Tuple[float, float], heading=None, speed=None):
        self.user_position = (float(position[0]), float(position[1]))
        if self.selected_trip is not None and self.ingest is not None and self.ingest.actor is not None:
            try:
                await self.ingest.submit_sample(
                    self.ingest.actor.id, self.user_position, heading=heading, speed=speed,
                    trip_id=self.selected_trip.id,
                )
            except TripConnectError as e:
                logger.error("Error updating location: %s", e)
        self.recenter()

    async def locate_user(self, options: GeolocationOptions = GeolocationOptions()):
        """Center on one fresh device fix. Returns the position, or None when none arrives."""
        if self.ingest is None:
            return None
        try:
            position = await self.ingest.geolocation.get_current_position(options)
        except TripConnectError as e:
            logger.warning("Could not locate user: %s", e)
            return None
        await self.update_user_position(
            (position.latitude, position.longitude), heading=position.heading, speed=position.speed
        )
        return position

    def recenter(self):
        """Best effort: a map that cannot move yet is logged and left alone."""
        trip = self.selected_trip
        try:
            if trip is not None and trip.start is not None and trip.end is not None:
                bounds = [(trip.start.lat, trip.start.lon), (trip.end.lat, trip.end.lon)]
                self.map_view.fit_bounds(bounds, padding=FIT_PADDING, max_zoom=FIT_MAX_ZOOM)
            elif trip is None and self.user_position is not None:
                self.map_view.set_view(self.user_position, USER_ZOOM)
        except Exception as e:
            logger.warning("Map update error: %s", e)

    # ---------- rendering ----------

    def trip_for_driver(self, driver_id: str) -> Optional[Trip]:
        return next((t for t in self.trips if t.driver_id == driver_id), None)

    def _driver_label(self, sample: LocationSample, moving: bool) -> str:
        profile = self.profiles.get(sample.actor_id)
        name = profile.full_name if profile else "Driver"
        lines = [f"<b>{name}</b> ({'Moving' if moving else 'Stopped'})"]
        trip = self.trip_for_driver(sample.actor_id)
        if trip is not None:
            lines.append(f"{trip.start_location} → {trip.destination}")
            lines.append(format_departure(trip.departure_time))
            lines.append(f"{trip.available_seats} seats available")
            if trip.price_per_seat is not None:
                lines.append(f"{trip.price_per_seat:.2f}/seat")
        lines.append(f"Last updated: {format_departure(sample.recorded_at)}")
        return "<br/>".join(lines)

    def markers(self) -> List[Marker]:
        markers = []
        if self.show_drivers:
            for actor_id, sample in self._views[Role.DRIVER].items():
                moving = is_moving(sample)
                markers.append(Marker(
                    key=f"driver:{actor_id}",
                    kind="driver",
                    latitude=sample.latitude,
                    longitude=sample.longitude,
                    label=self._driver_label(sample, moving),
                    color=COLORS["driver_moving" if moving else "driver"],
                    size=24,
                    moving=moving,
                ))
        for actor_id, sample in self._views[Role.PASSENGER].items():
            markers.append(Marker(
                key=f"passenger:{actor_id}",
                kind="passenger",
                latitude=sample.latitude,
                longitude=sample.longitude,
                label="<b>Passenger</b><br/>Passenger location updated recently",
                color=COLORS["passenger"],
                size=20,
                moving=is_moving(sample),
            ))
        if self.user_position is not None and self.selected_trip is None:
            markers.append(Marker(
                key="self",
                kind="self",
                latitude=self.user_position[0],
                longitude=self.user_position[1],
                label="<b>Your Location</b><br/>Updated in real-time",
                color=COLORS["self"],
                size=20,
            ))
        trip = self.selected_trip
        if trip is not None and trip.start is not None:
            markers.append(Marker(
                key="pickup", kind="pickup", latitude=trip.start.lat, longitude=trip.start.lon,
                label=f"<b>Pickup Location</b><br/>{trip.start_location}", color=COLORS["pickup"],
            ))
        if trip is not None and trip.end is not None:
            markers.append(Marker(
                key="destination", kind="destination", latitude=trip.end.lat, longitude=trip.end.lon,
                label=f"<b>Destination</b><br/>{trip.destination}", color=COLORS["destination"],
            ))
        return markers

    def route_coordinates(self) -> List[Tuple[float, float]]:
        trip = self.selected_trip
        if trip is None or trip.start is None or trip.end is None:
            return []
        if self.route:
            return list(self.route)
        return [(trip.start.lat, trip.start.lon), (trip.end.lat, trip.end.lon)]

    def pickup_radius(self):
        trip = self.selected_trip
        if trip is None or trip.start is None:
            return None
        return (trip.start.lat, trip.start.lon), PICKUP_RADIUS_M

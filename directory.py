"""Trips and bookings. Every write checks its guard before touching the store."""
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from errors import NotFoundError, PermissionDeniedError, ValidationError
from models import Actor, Booking, BookingStatus, Coordinates, Profile, Role, Trip, TripStatus

logger = logging.getLogger(__name__)

OPEN_TRIP_STATUSES = (TripStatus.SCHEDULED.value, TripStatus.ACTIVE.value)

TRIP_TRANSITIONS = {
    TripStatus.SCHEDULED: {TripStatus.ACTIVE, TripStatus.CANCELLED},
    TripStatus.ACTIVE: {TripStatus.COMPLETED, TripStatus.CANCELLED},
    TripStatus.COMPLETED: set(),
    TripStatus.CANCELLED: set(),
}


def _utcnow():
    return datetime.now(timezone.utc)


@dataclass
class BookingDetail:
    """A booking with its trip and the profile on the other side of it."""

    booking: Booking
    trip: Optional[Trip] = None
    counterpart: Optional[Profile] = None

    @property
    def counterpart_name(self) -> str:
        return self.counterpart.full_name if self.counterpart else "Unknown"

    @property
    def contact_phone(self) -> Optional[str]:
        # accepted bookings only
        if self.booking.status is BookingStatus.ACCEPTED and self.counterpart is not None:
            return self.counterpart.phone
        return None


class Directory:
    def __init__(self, store, notifier=None, clock=_utcnow):
        self.store = store
        self.notifier = notifier
        self.clock = clock

    # ===========================
    # TRIPS
    # ===========================
    async def create_trip(
        self,
        actor: Actor,
        start_location: str,
        destination: str,
        departure_time: datetime,
        available_seats: int,
        price_per_seat: Optional[float] = None,
        description: Optional[str] = None,
        start: Optional[Coordinates] = None,
        end: Optional[Coordinates] = None,
    ) -> Trip:
        if actor.role is not Role.DRIVER:
            raise PermissionDeniedError("Only drivers can post trips")
        if not start_location.strip() or not destination.strip():
            raise ValidationError("Start location and destination are required")
        if departure_time.tzinfo is None:
            departure_time = departure_time.replace(tzinfo=timezone.utc)
        if departure_time <= self.clock():
            raise ValidationError("Departure time must be in the future")
        if available_seats < 1:
            raise ValidationError("A trip needs at least one seat")
        if price_per_seat is not None and price_per_seat < 0:
            raise ValidationError("Price per seat cannot be negative")

        payload = {
            "driver_id": actor.id,
            "start_location": start_location.strip(),
            "destination": destination.strip(),
            "departure_time": departure_time.isoformat(),
            "available_seats": int(available_seats),
            "price_per_seat": price_per_seat,
            "description": description or None,
            "status": TripStatus.SCHEDULED.value,
        }
        if start is not None:
            payload.update(start_lat=start.lat, start_lng=start.lon)
        if end is not None:
            payload.update(dest_lat=end.lat, dest_lng=end.lon)
        row = await self.store.insert("trips", payload)
        logger.info("Trip %s created by %s", row.get("id"), actor.id)
        return Trip(**row)

    async def get_trip(self, trip_id: str) -> Trip:
        rows = await self.store.select("trips", eq={"id": trip_id}, limit=1)
        if not rows:
            raise NotFoundError(f"Trip {trip_id} not found")
        return Trip(**rows[0])

    async def search_trips(
        self,
        origin: Optional[str] = None,
        destination: Optional[str] = None,
        on_date: Optional[date] = None,
        limit: int = 20,
    ) -> List[Trip]:
        ilike = {}
        if origin:
            ilike["start_location"] = origin.strip()
        if destination:
            ilike["destination"] = destination.strip()
        gte, lte = {}, {}
        if on_date:
            start_of_day = datetime.combine(on_date, time.min).astimezone(timezone.utc)
            end_of_day = start_of_day + timedelta(days=1) - timedelta(microseconds=1)
            gte["departure_time"] = start_of_day.isoformat()
            lte["departure_time"] = end_of_day.isoformat()
        rows = await self.store.select(
            "trips",
            in_={"status": OPEN_TRIP_STATUSES},
            gt={"available_seats": 0},
            gte=gte,
            lte=lte,
            ilike=ilike,
            order="departure_time",
            limit=limit,
        )
        return [Trip(**r) for r in rows]

    async def active_trips(self) -> List[Trip]:
        rows = await self.store.select("trips", in_={"status": OPEN_TRIP_STATUSES})
        return [Trip(**r) for r in rows]

    async def driver_profiles(self) -> List[Profile]:
        rows = await self.store.select("profiles", eq={"role": Role.DRIVER.value})
        return [Profile(**r) for r in rows]

    async def list_driver_trips(self, actor: Actor) -> List[Trip]:
        rows = await self.store.select("trips", eq={"driver_id": actor.id}, order="departure_time")
        return [Trip(**r) for r in rows]

    async def update_trip_status(self, actor: Actor, trip_id: str, status: TripStatus) -> Trip:
        trip = await self.get_trip(trip_id)
        if trip.driver_id != actor.id:
            raise PermissionDeniedError("Only the driver can change this trip")
        status = TripStatus(status)
        if status not in TRIP_TRANSITIONS[trip.status]:
            raise ValidationError(f"A {trip.status.value} trip cannot become {status.value}")
        row = await self.store.update("trips", trip_id, {"status": status.value})
        logger.info("Trip %s is now %s", trip_id, status.value)
        return Trip(**row)

    async def delete_trip(self, actor: Actor, trip_id: str) -> None:
        trip = await self.get_trip(trip_id)
        if trip.driver_id != actor.id:
            raise PermissionDeniedError("Only the driver can delete this trip")
        await self.store.delete("trips", trip_id)
        logger.info("Trip %s deleted", trip_id)

    # ===========================
    # BOOKINGS
    # ===========================
    async def get_booking(self, booking_id: str) -> Booking:
        rows = await self.store.select("bookings", eq={"id": booking_id}, limit=1)
        if not rows:
            raise NotFoundError(f"Booking {booking_id} not found")
        return Booking(**rows[0])

    async def list_trip_bookings(self, actor: Actor, trip_id: str) -> List[Booking]:
        trip = await self.get_trip(trip_id)
        if trip.driver_id != actor.id:
            raise PermissionDeniedError("Only the driver can see bookings for this trip")
        rows = await self.store.select("bookings", eq={"trip_id": trip_id}, order="created_at", desc=True)
        return [Booking(**r) for r in rows]

    async def list_driver_bookings(self, actor: Actor) -> List[Booking]:
        trips = await self.list_driver_trips(actor)
        if not trips:
            return []
        rows = await self.store.select(
            "bookings", in_={"trip_id": [t.id for t in trips]}, order="created_at", desc=True
        )
        return [Booking(**r) for r in rows]

    async def list_passenger_bookings(self, actor: Actor) -> List[Booking]:
        rows = await self.store.select("bookings", eq={"passenger_id": actor.id}, order="created_at", desc=True)
        return [Booking(**r) for r in rows]

    async def list_passenger_booking_details(self, actor: Actor) -> List[BookingDetail]:
        """The passenger's bookings with trip and driver attached."""
        bookings = await self.list_passenger_bookings(actor)
        trips = await self.trips_by_id(b.trip_id for b in bookings)
        drivers = await self.profiles_by_user(t.driver_id for t in trips.values())
        details = []
        for b in bookings:
            trip = trips.get(b.trip_id)
            details.append(BookingDetail(b, trip, drivers.get(trip.driver_id) if trip else None))
        return details

    async def list_driver_booking_details(self, actor: Actor, trip_id: Optional[str] = None) -> List[BookingDetail]:
        """Requests on the driver's trips, or on one trip, with the passenger attached."""
        if trip_id:
            bookings = await self.list_trip_bookings(actor, trip_id)
        else:
            bookings = await self.list_driver_bookings(actor)
        trips = await self.trips_by_id(b.trip_id for b in bookings)
        passengers = await self.profiles_by_user(b.passenger_id for b in bookings)
        return [BookingDetail(b, trips.get(b.trip_id), passengers.get(b.passenger_id)) for b in bookings]

    async def trips_by_id(self, trip_ids: Iterable[str]) -> Dict[str, Trip]:
        ids = sorted(set(trip_ids))
        if not ids:
            return {}
        rows = await self.store.select("trips", in_={"id": ids})
        return {r["id"]: Trip(**r) for r in rows}

    async def profiles_by_user(self, user_ids: Iterable[str]) -> Dict[str, Profile]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        rows = await self.store.select("profiles", in_={"user_id": ids})
        return {r["user_id"]: Profile(**r) for r in rows}

    async def request_booking(self, actor: Actor, trip_id: str, seats: int, message: Optional[str] = None) -> Booking:
        trip = await self.get_trip(trip_id)
        if trip.driver_id == actor.id:
            raise ValidationError("You can't book your own trip")
        if trip.status.value not in OPEN_TRIP_STATUSES:
            raise ValidationError(f"This trip is {trip.status.value}")
        if seats < 1:
            raise ValidationError("Request at least one seat")
        if seats > trip.available_seats:
            raise ValidationError("Not enough seats available")
        existing = await self.store.select(
            "bookings",
            eq={"trip_id": trip_id, "passenger_id": actor.id},
            in_={"status": (BookingStatus.PENDING.value, BookingStatus.ACCEPTED.value)},
            limit=1,
        )
        if existing:
            raise ValidationError("You already have a booking for this trip")

        row = await self.store.insert("bookings", {
            "trip_id": trip_id,
            "passenger_id": actor.id,
            "seats_requested": int(seats),
            "message": message or None,
            "status": BookingStatus.PENDING.value,
        })
        booking = Booking(**row)
        logger.info("Booking %s requested on trip %s", booking.id, trip_id)
        self._notify(booking.id, "booking_created")
        return booking

    async def accept_booking(self, actor: Actor, booking_id: str) -> Booking:
        booking, trip = await self._driver_decision(actor, booking_id)
        accepted = await self.store.select(
            "bookings", eq={"trip_id": trip.id, "status": BookingStatus.ACCEPTED.value}
        )
        taken = sum(r.get("seats_requested", 0) for r in accepted)
        if taken + booking.seats_requested > trip.available_seats:
            raise ValidationError("Not enough seats left to accept this booking")
        return await self._set_status(booking, BookingStatus.ACCEPTED, "booking_accepted")

    async def reject_booking(self, actor: Actor, booking_id: str) -> Booking:
        booking, _ = await self._driver_decision(actor, booking_id)
        return await self._set_status(booking, BookingStatus.REJECTED, "booking_rejected")

    async def cancel_booking(self, actor: Actor, booking_id: str) -> Booking:
        booking = await self.get_booking(booking_id)
        if booking.passenger_id != actor.id:
            raise PermissionDeniedError("Only the passenger can cancel this booking")
        if booking.status not in (BookingStatus.PENDING, BookingStatus.ACCEPTED):
            raise ValidationError(f"A {booking.status.value} booking cannot be cancelled")
        return await self._set_status(booking, BookingStatus.CANCELLED)

    async def _driver_decision(self, actor, booking_id):
        booking = await self.get_booking(booking_id)
        trip = await self.get_trip(booking.trip_id)
        if trip.driver_id != actor.id:
            raise PermissionDeniedError("Only the driver can answer this booking")
        if booking.status is not BookingStatus.PENDING:
            raise ValidationError(f"Booking is already {booking.status.value}")
        return booking, trip

    async def _set_status(self, booking, status, notification=None):
        row = await self.store.update("bookings", booking.id, {"status": status.value})
        logger.info("Booking %s is now %s", booking.id, status.value)
        if notification:
            self._notify(booking.id, notification)
        return Booking(**row)

    def _notify(self, booking_id, kind):
        if self.notifier is not None:
            self.notifier.schedule(booking_id, kind)

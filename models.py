from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Role(str, Enum):
    DRIVER = "driver"
    PASSENGER = "passenger"


class TripStatus(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BookingStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class Coordinates(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)


class Actor(BaseModel):
    id: str
    role: Role = Role.PASSENGER
    email: Optional[str] = None


class Profile(BaseModel):
    id: Optional[str] = None
    user_id: str
    email: str
    full_name: str
    phone: Optional[str] = None
    avatar_url: Optional[str] = None
    role: Role = Role.PASSENGER


class Trip(BaseModel):
    id: str
    driver_id: str
    start_location: str
    destination: str
    start_lat: Optional[float] = None
    start_lng: Optional[float] = None
    dest_lat: Optional[float] = None
    dest_lng: Optional[float] = None
    departure_time: datetime
    available_seats: int
    price_per_seat: Optional[float] = None
    description: Optional[str] = None
    status: TripStatus = TripStatus.SCHEDULED
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def start(self) -> Optional[Coordinates]:
        if self.start_lat is None or self.start_lng is None:
            return None
        return Coordinates(lat=self.start_lat, lon=self.start_lng)

    @property
    def end(self) -> Optional[Coordinates]:
        if self.dest_lat is None or self.dest_lng is None:
            return None
        return Coordinates(lat=self.dest_lat, lon=self.dest_lng)


class Booking(BaseModel):
    id: str
    trip_id: str
    passenger_id: str
    seats_requested: int = Field(default=1, ge=1)
    status: BookingStatus = BookingStatus.PENDING
    message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LocationSample(BaseModel):
    id: Optional[str] = None
    actor_id: str
    role: Role
    trip_id: Optional[str] = None
    latitude: float
    longitude: float
    heading: Optional[float] = None
    speed: Optional[float] = None
    recorded_at: datetime

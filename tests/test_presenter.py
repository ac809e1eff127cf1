import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from supabase import PostgrestAPIError

from changes import ChangeFeed
from conftest import RecordingMapView, make_client
from db import SupabaseStore
from directory import Directory
from geolocation import Geolocation, GeolocationOptions, Position, QueuePositionSource
from locations import LocationStore
from models import LocationSample, Role, Trip
from presenter import LiveMapPresenter, PresenterState, is_moving
from sharing import LocationIngest

T0 = datetime(2025, 9, 5, 12, 0, tzinfo=timezone.utc)


def add_sample(store, actor_id, seconds, lat, role="driver", speed=None):
    store.add(
        "location_samples",
        actor_id=actor_id,
        role=role,
        latitude=lat,
        longitude=77.0,
        speed=speed,
        recorded_at=(T0 + timedelta(seconds=seconds)).isoformat(),
    )


def make_trip(**kw):
    data = dict(
        id="t1", driver_id="D", start_location="A", destination="B",
        start_lat=28.6, start_lng=77.2, dest_lat=28.4, dest_lng=77.0,
        departure_time=T0 + timedelta(days=1), available_seats=3,
    )
    data.update(kw)
    return Trip(**data)


async def settle(presenter):
    await asyncio.gather(*list(presenter._refreshes))


def make_presenter(store, feed=None, map_view=None, **kw):
    return LiveMapPresenter(
        LocationStore(store), feed or ChangeFeed(), map_view or RecordingMapView(), **kw
    )


@pytest.mark.asyncio
async def test_mount_subscribes_and_loads_latest(store):
    add_sample(store, "D", 1, 10)
    add_sample(store, "D", 2, 20)
    add_sample(store, "P", 1, 30, role="passenger")
    feed = ChangeFeed()
    presenter = make_presenter(store, feed)

    await presenter.mount()

    assert presenter.state is PresenterState.SUBSCRIBED
    assert feed.active_count == 2
    assert presenter.latest(Role.DRIVER)["D"].latitude == 20
    assert set(presenter.latest(Role.PASSENGER)) == {"P"}


@pytest.mark.asyncio
async def test_mount_twice_does_not_double_subscribe(store):
    feed = ChangeFeed()
    presenter = make_presenter(store, feed)

    await presenter.mount()
    await presenter.mount()

    assert feed.active_count == 2


@pytest.mark.asyncio
async def test_hidden_drivers_stay_idle(store):
    feed = ChangeFeed()
    presenter = make_presenter(store, feed, show_drivers=False)

    await presenter.mount()

    assert presenter.state is PresenterState.IDLE
    assert feed.active_count == 0


@pytest.mark.asyncio
async def test_change_notification_replaces_markers(store):
    add_sample(store, "D", 1, 10)
    feed = ChangeFeed()
    presenter = make_presenter(store, feed)
    await presenter.mount()

    add_sample(store, "D", 5, 50, speed=8.0)
    add_sample(store, "E", 4, 40)
    feed.publish("driver", {"eventType": "INSERT"})
    await settle(presenter)

    drivers = presenter.latest(Role.DRIVER)
    assert drivers["D"].latitude == 50
    assert set(drivers) == {"D", "E"}
    markers = {m.key: m for m in presenter.markers()}
    assert markers["driver:D"].moving
    assert not markers["driver:E"].moving


@pytest.mark.asyncio
async def test_stale_markers_do_not_survive_refresh(store):
    add_sample(store, "D", 1, 10)
    feed = ChangeFeed()
    presenter = make_presenter(store, feed)
    await presenter.mount()

    store.tables["location_samples"].clear()
    feed.publish("driver")
    await settle(presenter)

    assert presenter.latest(Role.DRIVER) == {}
    assert not [m for m in presenter.markers() if m.kind == "driver"]


@pytest.mark.asyncio
async def test_unmount_twice_leaves_no_subscriptions(store):
    feed = ChangeFeed()
    presenter = make_presenter(store, feed)
    await presenter.mount()

    presenter.unmount()
    presenter.unmount()

    assert feed.active_count == 0
    assert presenter.state is PresenterState.IDLE


@pytest.mark.asyncio
async def test_toggle_show_drivers(store):
    feed = ChangeFeed()
    presenter = make_presenter(store, feed)
    await presenter.mount()

    await presenter.set_show_drivers(False)
    assert presenter.state is PresenterState.IDLE
    assert feed.active_count == 0

    await presenter.set_show_drivers(True)
    assert presenter.state is PresenterState.SUBSCRIBED
    assert feed.active_count == 2


@pytest.mark.asyncio
async def test_refresh_after_unmount_is_dropped(store):
    add_sample(store, "D", 1, 10)
    presenter = make_presenter(store)

    await presenter.refresh(Role.DRIVER)

    assert presenter.latest(Role.DRIVER) == {}


def test_selected_trip_fits_both_endpoints(store):
    view = RecordingMapView()
    presenter = make_presenter(store, map_view=view)

    presenter.select_trip(make_trip())

    name, bounds, padding, max_zoom = view.calls[-1]
    assert name == "fit_bounds"
    assert bounds == [(28.6, 77.2), (28.4, 77.0)]
    assert (padding, max_zoom) == (50, 15)


def test_trip_without_coordinates_does_not_move_map(store):
    view = RecordingMapView()
    presenter = make_presenter(store, map_view=view)
    presenter.user_position = (1.0, 2.0)

    presenter.select_trip(make_trip(dest_lat=None, dest_lng=None))

    assert view.calls == []


@pytest.mark.asyncio
async def test_user_position_centers_without_trip(store):
    view = RecordingMapView()
    presenter = make_presenter(store, map_view=view)

    await presenter.update_user_position((12.5, 77.5))

    assert view.calls[-1] == ("set_view", (12.5, 77.5), 15)
    assert any(m.kind == "self" for m in presenter.markers())


@pytest.mark.asyncio
async def test_map_not_ready_is_swallowed(store):
    view = RecordingMapView(ready=False)
    presenter = make_presenter(store, map_view=view)

    await presenter.update_user_position((12.5, 77.5))
    presenter.select_trip(make_trip())

    assert view.calls == []


@pytest.mark.asyncio
async def test_own_position_is_shared_while_trip_selected(store, passenger):
    ingest = LocationIngest(store, Geolocation(QueuePositionSource()), passenger, secure_context=True)
    presenter = make_presenter(store, ingest=ingest)
    presenter.select_trip(make_trip())

    await presenter.update_user_position((28.5, 77.1))

    rows = store.tables["location_samples"]
    assert len(rows) == 1
    assert rows[0]["trip_id"] == "t1"
    assert rows[0]["role"] == "passenger"


@pytest.mark.asyncio
async def test_own_position_share_failure_does_not_raise(store, passenger):
    ingest = LocationIngest(store, Geolocation(QueuePositionSource()), passenger, secure_context=False)
    presenter = make_presenter(store, ingest=ingest)
    presenter.select_trip(make_trip())

    await presenter.update_user_position((28.5, 77.1))

    assert store.tables["location_samples"] == []
    assert presenter.user_position == (28.5, 77.1)


@pytest.mark.asyncio
async def test_driver_marker_carries_profile_and_trip(store, tomorrow):
    store.add("profiles", user_id="D", email="d@example.com", full_name="Dev Driver", role="driver")
    store.add(
        "trips", id="t1", driver_id="D", start_location="Delhi", destination="Agra",
        departure_time=tomorrow.isoformat(), available_seats=2, price_per_seat=150.0, status="active",
    )
    add_sample(store, "D", 1, 28.6)
    presenter = make_presenter(store, directory=Directory(store))

    await presenter.mount()

    marker = next(m for m in presenter.markers() if m.kind == "driver")
    assert "Dev Driver" in marker.label
    assert "Delhi → Agra" in marker.label
    assert "150.00/seat" in marker.label


def test_selected_trip_route_and_pickup(store):
    presenter = make_presenter(store)
    presenter.select_trip(make_trip())

    kinds = {m.kind for m in presenter.markers()}
    assert {"pickup", "destination"} <= kinds
    assert "self" not in kinds
    assert presenter.route_coordinates() == [(28.6, 77.2), (28.4, 77.0)]
    assert presenter.pickup_radius() == ((28.6, 77.2), 500)

    presenter.select_trip(make_trip(), route=[(28.6, 77.2), (28.5, 77.1), (28.4, 77.0)])
    assert len(presenter.route_coordinates()) == 3


def test_is_moving():
    base = dict(actor_id="D", role=Role.DRIVER, latitude=0, longitude=0, recorded_at=T0)
    assert is_moving(LocationSample(speed=1.2, **base))
    assert not is_moving(LocationSample(speed=0, **base))
    assert not is_moving(LocationSample(**base))


@pytest.mark.asyncio
async def test_trip_changes_reload_trip_list(store, tomorrow):
    feed = ChangeFeed()
    presenter = make_presenter(store, feed, directory=Directory(store))
    await presenter.mount()
    assert feed.active_count == 3
    assert presenter.trips == []

    store.add(
        "trips", id="t9", driver_id="D", start_location="Delhi", destination="Agra",
        departure_time=tomorrow.isoformat(), available_seats=2, status="scheduled",
    )
    feed.publish("trips", {"eventType": "INSERT"})
    await settle(presenter)

    assert [t.id for t in presenter.trips] == ["t9"]

    presenter.unmount()
    assert feed.active_count == 0


@pytest.mark.asyncio
async def test_backend_failure_does_not_break_mount():
    client, _ = make_client(error=PostgrestAPIError({"message": "canceling statement due to statement timeout", "code": "57014"}))
    store = SupabaseStore(client)
    presenter = make_presenter(store, directory=Directory(store))

    await presenter.mount()

    assert presenter.state is PresenterState.SUBSCRIBED
    assert presenter.latest(Role.DRIVER) == {}
    assert presenter.trips == []


@pytest.mark.asyncio
async def test_locate_user_centers_on_device_fix(store, passenger):
    source = QueuePositionSource()
    ingest = LocationIngest(store, Geolocation(source), passenger, secure_context=True)
    view = RecordingMapView()
    presenter = make_presenter(store, map_view=view, ingest=ingest)

    source.push(Position(latitude=12.5, longitude=77.5))
    position = await presenter.locate_user()

    assert position.latitude == 12.5
    assert view.calls[-1] == ("set_view", (12.5, 77.5), 15)


@pytest.mark.asyncio
async def test_locate_user_timeout_returns_none(store, passenger):
    ingest = LocationIngest(store, Geolocation(QueuePositionSource()), passenger, secure_context=True)
    view = RecordingMapView()
    presenter = make_presenter(store, map_view=view, ingest=ingest)

    assert await presenter.locate_user(GeolocationOptions(timeout_ms=20)) is None
    assert view.calls == []

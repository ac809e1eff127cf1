# main.py - TripConnect Streamlit app (trips, bookings, live location sharing)
from datetime import datetime, timedelta

import streamlit as st
from supabase import acreate_client

from auth import actor_for, get_profile, login, save_profile, sign_out
from changes import SupabaseChangeFeed
from config import Settings
from db import SupabaseStore
from directory import Directory
from errors import TripConnectError
from geocoding import fetch_route, geocode_label
from geolocation import Geolocation, Position, QueuePositionSource
from locations import LocationStore
from models import BookingStatus, Profile, Role, TripStatus
from notifications import BookingNotifier
from presenter import LiveMapPresenter, PresenterState
from runtime import BackgroundLoop
from sharing import LocationIngest
from utils import combine_departure, format_departure, is_secure_context, setup_logging
from viewport import DeckMapView, center_on

# ===========================
# CONFIG / INIT
# ===========================
st.set_page_config(page_title="TripConnect", layout="wide")
setup_logging()

settings = Settings.from_env()
if not settings.has_supabase:
    st.error(
        "Missing Supabase secrets. Add SUPABASE_URL and SUPABASE_KEY in Streamlit Cloud Secrets "
        "or the environment."
    )
    st.stop()


@st.cache_resource
def get_loop():
    return BackgroundLoop()


loop = get_loop()

if "client" not in st.session_state:
    try:
        st.session_state.client = loop.run(acreate_client(settings.supabase_url, settings.supabase_key))
    except Exception as e:
        st.error(f"Failed to create Supabase client: {e}")
        st.stop()
    st.session_state.notifier = BookingNotifier(st.session_state.client)

client = st.session_state.client
store = SupabaseStore(client)
directory = Directory(store, st.session_state.notifier)

for key, default in {"user": None, "ingest": None, "watch": None, "presenter": None, "sharing_messages": []}.items():
    st.session_state.setdefault(key, default)


def run_action(coro, success=None):
    """Run a directory call and surface domain errors instead of raising."""
    try:
        result = loop.run(coro)
    except TripConnectError as e:
        st.error(str(e))
        return None
    if success:
        st.success(success)
    return result


# ===========================
# AUTH
# ===========================
if not st.session_state.user:
    login(loop.run, client)
    st.stop()

user = st.session_state.user
profile = run_action(get_profile(store, user["id"]))
actor = actor_for(user, profile)


def stop_sharing():
    ingest = st.session_state.ingest
    if ingest is not None:
        loop.call(ingest.stop, st.session_state.watch)
    st.session_state.ingest = None
    st.session_state.watch = None


def unmount_presenter():
    presenter = st.session_state.presenter
    if presenter is not None:
        loop.call(presenter.unmount)


st.sidebar.title(f"Welcome, {user.get('email')}")
st.sidebar.caption(f"Signed in as {actor.role.value}")
if st.sidebar.button("Log out"):
    stop_sharing()
    unmount_presenter()
    st.session_state.presenter = None
    try:
        loop.run(st.session_state.notifier.flush())
        loop.run(sign_out(client))
    except Exception as e:
        st.warning(f"Sign out failed: {e}")
    st.session_state.user = None
    st.rerun()

views = ["Find Trips", "My Bookings", "Live Map", "Profile"]
if actor.role is Role.DRIVER:
    views = ["Driver Dashboard", "Post Trip"] + views
view = st.sidebar.radio("Go to", views)

if view != "Live Map":
    unmount_presenter()


# ===========================
# LOCATION SHARING
# ===========================
def sharing_panel(trip_id=None):
    st.subheader("Location sharing")
    messages = st.session_state.sharing_messages
    while messages:
        st.info(messages.pop(0))

    ingest = st.session_state.ingest
    if ingest is None or not ingest.is_sharing:
        if ingest is not None and ingest.last_error:
            st.error(ingest.last_error)
        if st.button("Start sharing location"):
            source = loop.call(QueuePositionSource)
            ingest = LocationIngest(
                store,
                Geolocation(source),
                actor,
                secure_context=is_secure_context(settings.app_url),
                trip_id=trip_id,
                on_message=st.session_state.sharing_messages.append,
            )
            try:
                st.session_state.watch = loop.call(ingest.start)
            except TripConnectError as e:
                st.error(str(e))
                return
            st.session_state.ingest = ingest
            st.rerun()
        return

    st.success(f"Sharing your location ({ingest.samples_sent} updates sent)")
    with st.form("position_form"):
        address = st.text_input("Where are you? (address, optional)")
        lat = st.number_input("Latitude", -90.0, 90.0, settings.map_default_lat, format="%.6f")
        lng = st.number_input("Longitude", -180.0, 180.0, settings.map_default_lng, format="%.6f")
        speed = st.number_input("Speed (m/s)", 0.0, 100.0, 0.0)
        submit = st.form_submit_button("Send position")
    if submit:
        coords = geocode_label(address, settings.geocoder_user_agent) if address else None
        if address and coords is None:
            st.error("Could not geocode that address. Try a nearby one.")
        else:
            position = Position(
                latitude=coords.lat if coords else lat,
                longitude=coords.lon if coords else lng,
                speed=speed or None,
            )
            loop.call(ingest.geolocation.source.push, position)
    if st.button("Stop sharing location"):
        stop_sharing()
        st.rerun()


def trip_caption(trip):
    price = f" | {trip.price_per_seat:.2f}/seat" if trip.price_per_seat is not None else ""
    return (
        f"{format_departure(trip.departure_time)} | {trip.available_seats} seat(s) "
        f"| {trip.status.value}{price}"
    )


def booking_summary(detail, show_trip=True):
    booking = detail.booking
    parts = [f"**{detail.counterpart_name}**", f"{booking.seats_requested} seat(s)", f"**{booking.status.value}**"]
    if show_trip and detail.trip is not None:
        trip = detail.trip
        parts.insert(1, f"{trip.start_location} → {trip.destination}, {format_departure(trip.departure_time)}")
    if detail.contact_phone:
        parts.append(f"📞 {detail.contact_phone}")
    return " | ".join(parts)


# ---------- Find Trips ----------
if view == "Find Trips":
    st.title("Find a Trip")
    with st.form("search_form"):
        origin = st.text_input("From")
        destination = st.text_input("To")
        use_date = st.checkbox("Filter by date")
        on_date = st.date_input("Date", value=datetime.today())
        st.form_submit_button("Search")
    trips = run_action(directory.search_trips(origin, destination, on_date if use_date else None)) or []
    if not trips:
        st.info("No trips found.")
    for trip in trips:
        with st.expander(f"🚗 {trip.start_location} → {trip.destination}"):
            st.write(trip_caption(trip))
            if trip.description:
                st.write(trip.description)
            if trip.driver_id == actor.id:
                st.caption("This is your trip.")
                continue
            with st.form(f"book_{trip.id}"):
                seats = st.number_input("Seats", 1, max(trip.available_seats, 1), 1)
                message = st.text_area("Message to the driver (optional)")
                if st.form_submit_button("Request booking"):
                    run_action(
                        directory.request_booking(actor, trip.id, int(seats), message),
                        success="Booking request sent successfully!",
                    )

# ---------- Post Trip ----------
elif view == "Post Trip":
    st.title("Create New Trip")
    with st.form("trip_form"):
        start_location = st.text_input("Start location")
        destination = st.text_input("Destination")
        departure_date = st.date_input("Departure date", value=datetime.today())
        departure_time = st.time_input("Departure time", value=(datetime.now() + timedelta(hours=1)).time())
        seats = st.number_input("Available seats", 1, 8, 1)
        price = st.number_input("Price per seat (0 = free)", 0.0, 10000.0, 0.0, step=10.0)
        description = st.text_area("Description (optional)")
        submit = st.form_submit_button("Create Trip")
    if submit:
        start = geocode_label(start_location, settings.geocoder_user_agent)
        end = geocode_label(destination, settings.geocoder_user_agent)
        if start is None or end is None:
            st.warning("Could not geocode one or both locations; the trip will have no map route.")
        run_action(
            directory.create_trip(
                actor,
                start_location,
                destination,
                combine_departure(departure_date, departure_time),
                int(seats),
                price_per_seat=price or None,
                description=description,
                start=start,
                end=end,
            ),
            success="Trip created successfully!",
        )

# ---------- Driver Dashboard ----------
elif view == "Driver Dashboard":
    st.title("Driver Dashboard")
    trips = run_action(directory.list_driver_trips(actor)) or []
    bookings = run_action(directory.list_driver_bookings(actor)) or []
    col1, col2 = st.columns(2)
    col1.metric("Active trips", sum(1 for t in trips if t.status is TripStatus.ACTIVE))
    col2.metric("Pending requests", sum(1 for b in bookings if b.status is BookingStatus.PENDING))

    st.subheader("My trips")
    if not trips:
        st.info("You have not posted any trips yet.")
    for trip in trips:
        st.write(f"**{trip.start_location} → {trip.destination}**  \n{trip_caption(trip)}")
        cols = st.columns(4)
        if trip.status is TripStatus.SCHEDULED and cols[0].button("Start", key=f"start_{trip.id}"):
            run_action(directory.update_trip_status(actor, trip.id, TripStatus.ACTIVE), success="Trip started")
        if trip.status is TripStatus.ACTIVE and cols[1].button("Complete", key=f"done_{trip.id}"):
            run_action(directory.update_trip_status(actor, trip.id, TripStatus.COMPLETED), success="Trip completed")
        if trip.status in (TripStatus.SCHEDULED, TripStatus.ACTIVE) and cols[2].button("Cancel", key=f"cancel_{trip.id}"):
            run_action(directory.update_trip_status(actor, trip.id, TripStatus.CANCELLED), success="Trip cancelled")
        if cols[3].button("Delete", key=f"delete_{trip.id}"):
            run_action(directory.delete_trip(actor, trip.id), success="Trip deleted")
        with st.expander("Passengers on this trip"):
            passengers = run_action(directory.list_driver_booking_details(actor, trip.id)) or []
            if not passengers:
                st.caption("No bookings for this trip yet.")
            for detail in passengers:
                st.write(booking_summary(detail, show_trip=False))

    st.subheader("Booking requests")
    details = run_action(directory.list_driver_booking_details(actor)) or []
    if not details:
        st.info("No booking requests yet.")
    for detail in details:
        booking = detail.booking
        st.write(booking_summary(detail))
        if booking.message:
            st.caption(f"“{booking.message}”")
        if booking.status is BookingStatus.PENDING:
            cols = st.columns(2)
            if cols[0].button("Accept", key=f"accept_{booking.id}"):
                run_action(directory.accept_booking(actor, booking.id), success="Booking accepted!")
            if cols[1].button("Reject", key=f"reject_{booking.id}"):
                run_action(directory.reject_booking(actor, booking.id), success="Booking rejected!")

    active = [t for t in trips if t.status is TripStatus.ACTIVE]
    sharing_panel(active[0].id if active else None)

# ---------- My Bookings ----------
elif view == "My Bookings":
    st.title("My Bookings")
    details = run_action(directory.list_passenger_booking_details(actor)) or []
    if not details:
        st.info("You have no bookings yet.")
    for detail in details:
        booking = detail.booking
        st.write(booking_summary(detail))
        if booking.status in (BookingStatus.PENDING, BookingStatus.ACCEPTED):
            if st.button("Cancel booking", key=f"cancel_{booking.id}"):
                run_action(directory.cancel_booking(actor, booking.id), success="Booking cancelled")
    accepted = [d.booking for d in details if d.booking.status is BookingStatus.ACCEPTED]
    sharing_panel(accepted[0].trip_id if accepted else None)

# ---------- Live Map ----------
elif view == "Live Map":
    st.title("Live Map")
    presenter = st.session_state.presenter
    if presenter is None:
        ingest = LocationIngest(
            store,
            Geolocation(loop.call(QueuePositionSource)),
            actor,
            secure_context=is_secure_context(settings.app_url),
        )
        presenter = LiveMapPresenter(
            LocationStore(store),
            loop.call(SupabaseChangeFeed, client),
            DeckMapView(),
            directory=directory,
            ingest=ingest,
        )
        st.session_state.presenter = presenter

    show_drivers = st.toggle("Show drivers", value=presenter.show_drivers)
    try:
        loop.run(presenter.set_show_drivers(show_drivers))
    except TripConnectError as e:
        st.warning(str(e))

    trips = loop.call(lambda: list(presenter.trips))
    labels = {"(none)": None}
    labels.update({f"{t.start_location} → {t.destination} ({format_departure(t.departure_time)})": t for t in trips})
    choice = st.selectbox("Trip", list(labels))
    trip = labels[choice]
    if trip is not presenter.selected_trip:
        route = ()
        if trip is not None and trip.start is not None and trip.end is not None:
            route = fetch_route(trip.start, trip.end, settings.ors_api_key) or ()
        loop.call(presenter.select_trip, trip, route)

    with st.expander("Update my position"):
        with st.form("my_position"):
            lat = st.number_input("Latitude", -90.0, 90.0, settings.map_default_lat, format="%.6f")
            lng = st.number_input("Longitude", -180.0, 180.0, settings.map_default_lng, format="%.6f")
            if st.form_submit_button("Set position"):
                loop.call(presenter.ingest.geolocation.source.push, Position(latitude=lat, longitude=lng))
                if loop.run(presenter.locate_user()) is None:
                    st.warning("Could not get your position.")

    if not presenter.map_view.ready:
        default = (settings.map_default_lat, settings.map_default_lng)
        loop.call(presenter.map_view.attach, center_on(default, settings.map_default_zoom))
        loop.call(presenter.recenter)

    @st.fragment(run_every=3)
    def live_map():
        markers = loop.call(presenter.markers)
        deck = presenter.map_view.deck(markers, presenter.route_coordinates(), presenter.pickup_radius())
        st.pydeck_chart(deck)
        drivers = sum(1 for m in markers if m.kind == "driver")
        moving = sum(1 for m in markers if m.kind == "driver" and m.moving)
        status = "live" if presenter.state is PresenterState.SUBSCRIBED else "paused"
        st.caption(f"{drivers} driver(s) on the map, {moving} moving. Updates are {status}.")

    live_map()

# ---------- Profile ----------
elif view == "Profile":
    st.title("Profile")
    with st.form("profile_form"):
        full_name = st.text_input("Your name", value=profile.full_name if profile else "")
        phone = st.text_input("Phone", value=(profile.phone or "") if profile else "")
        roles = [Role.PASSENGER.value, Role.DRIVER.value]
        role = st.radio("I am a", roles, index=roles.index(actor.role.value))
        submit = st.form_submit_button("Save profile")
    if submit:
        updated = Profile(
            id=profile.id if profile else None,
            user_id=user["id"],
            email=user.get("email") or "",
            full_name=full_name,
            phone=phone or None,
            role=Role(role),
        )
        if run_action(save_profile(store, updated), success="Profile saved!"):
            st.rerun()

    st.subheader("Recent location updates")
    recent = run_action(LocationStore(store).history(actor.id, limit=10)) or []
    if not recent:
        st.caption("You have not shared your location yet.")
    for sample in recent:
        st.write(f"{format_departure(sample.recorded_at)}: {sample.latitude:.5f}, {sample.longitude:.5f}")

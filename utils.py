import logging
from datetime import date, datetime, time, timezone
from urllib.parse import urlparse

SECURE_HOSTS = {"localhost", "127.0.0.1", "::1"}


def setup_logging(level=logging.INFO):
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    # realtime and httpx log every frame and request at INFO
    for logger_name in ["httpx", "hpack", "realtime"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def combine_departure(day: date, at: time) -> datetime:
    """Join the date and time inputs of the trip form into an aware UTC datetime."""
    dt = datetime.combine(day, at)
    if dt.tzinfo is None:
        dt = dt.astimezone()
    return dt.astimezone(timezone.utc)


def format_departure(dep):
    if isinstance(dep, datetime):
        return dep.astimezone().strftime("%a %d %b %Y, %H:%M")
    if isinstance(dep, str):
        try:
            return format_departure(datetime.fromisoformat(dep))
        except ValueError:
            return dep
    return str(dep)


def validate_coordinates(coords):
    """Ensure coords is a [lat, lon] pair of floats within range"""
    if not isinstance(coords, (list, tuple)) or len(coords) != 2:
        return False
    try:
        lat, lon = float(coords[0]), float(coords[1])
    except (TypeError, ValueError):
        return False
    return -90 <= lat <= 90 and -180 <= lon <= 180


def is_secure_context(app_url: str) -> bool:
    """Browsers only expose geolocation on https origins and on localhost."""
    parsed = urlparse(app_url or "")
    if parsed.scheme == "https":
        return True
    return parsed.scheme == "http" and parsed.hostname in SECURE_HOSTS

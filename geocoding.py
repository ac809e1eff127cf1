import logging
import time as pytime
from functools import lru_cache

import requests
from geopy.exc import GeopyError
from geopy.geocoders import Nominatim

from models import Coordinates

logger = logging.getLogger(__name__)

ORS_DIRECTIONS_URL = "https://api.openrouteservice.org/v2/directions/driving-car/geojson"


@lru_cache(maxsize=500)
def geocode_label(label: str, user_agent: str = "tripconnect", retries=2):
    """Return Coordinates for a place label, or None"""
    label = (label or "").strip()
    if not label:
        return None
    geolocator = Nominatim(user_agent=user_agent)
    for attempt in range(retries + 1):
        try:
            location = geolocator.geocode(label, timeout=10)
            if location:
                return Coordinates(lat=location.latitude, lon=location.longitude)
            return None
        except GeopyError as e:
            if attempt < retries:
                pytime.sleep(1)
                continue
            logger.warning("Geocoding %r failed: %s", label, e)
            return None


def fetch_route(start: Coordinates, end: Coordinates, api_key: str):
    """Road route as [(lat, lon), ...] from OpenRouteService, or None"""
    if not api_key:
        return None
    try:
        headers = {"Authorization": api_key}
        body = {"coordinates": [[start.lon, start.lat], [end.lon, end.lat]]}
        r = requests.post(ORS_DIRECTIONS_URL, json=body, headers=headers, timeout=6)
        r.raise_for_status()
        coords = r.json()["features"][0]["geometry"]["coordinates"]
        return [(float(lat), float(lon)) for lon, lat in coords]
    except (requests.RequestException, KeyError, IndexError, ValueError) as e:
        logger.warning("ORS route fetch failed: %s", e)
        return None

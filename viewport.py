"""Viewport math (Web Mercator, 256 px tiles) and the pydeck map widget."""
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import pydeck as pdk

from errors import MapNotReadyError

TILE_SIZE = 256
MAX_LATITUDE = 85.05112878

LatLng = Tuple[float, float]


@dataclass(frozen=True)
class Viewport:
    latitude: float
    longitude: float
    zoom: float


def _project(lat: float, lng: float) -> Tuple[float, float]:
    lat = max(-MAX_LATITUDE, min(MAX_LATITUDE, lat))
    x = (lng + 180.0) / 360.0
    s = math.sin(math.radians(lat))
    y = 0.5 - math.log((1 + s) / (1 - s)) / (4 * math.pi)
    return x, y


def _unproject_lat(y: float) -> float:
    return math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * y))))


def fit_bounds(
    points: Sequence[LatLng],
    width: int,
    height: int,
    padding: int = 50,
    max_zoom: float = 15,
) -> Viewport:
    """Smallest whole-zoom viewport that shows every point inside the padding."""
    if not points:
        raise ValueError("fit_bounds needs at least one point")
    projected = [_project(lat, lng) for lat, lng in points]
    xs = [p[0] for p in projected]
    ys = [p[1] for p in projected]
    cx = (min(xs) + max(xs)) / 2
    cy = (min(ys) + max(ys)) / 2

    avail_w = max(width - 2 * padding, 1)
    avail_h = max(height - 2 * padding, 1)
    zoom = max_zoom
    span_x = max(xs) - min(xs)
    span_y = max(ys) - min(ys)
    if span_x > 0:
        zoom = min(zoom, math.log2(avail_w / (TILE_SIZE * span_x)))
    if span_y > 0:
        zoom = min(zoom, math.log2(avail_h / (TILE_SIZE * span_y)))
    zoom = max(0, math.floor(zoom))
    return Viewport(latitude=_unproject_lat(cy), longitude=cx * 360.0 - 180.0, zoom=zoom)


def center_on(position: LatLng, zoom: float) -> Viewport:
    return Viewport(latitude=position[0], longitude=position[1], zoom=zoom)


def _hex_to_rgb(value: str) -> List[int]:
    digits = value.lstrip("#")
    if len(digits) == 3:
        digits = "".join(ch * 2 for ch in digits)
    if len(digits) != 6:
        raise ValueError(f"Unsupported hex colour format: {value}")
    return [int(digits[idx: idx + 2], 16) for idx in (0, 2, 4)]


class DeckMapView:
    """Map widget backed by a pydeck Deck.

    The view is not ready until attach() gives it an initial viewport; until then
    fit_bounds and set_view raise MapNotReadyError.
    """

    def __init__(self, width: int = 700, height: int = 500):
        self.width = width
        self.height = height
        self.viewport: Optional[Viewport] = None

    @property
    def ready(self) -> bool:
        return self.viewport is not None

    def attach(self, viewport: Viewport):
        self.viewport = viewport

    def fit_bounds(self, bounds: Sequence[LatLng], padding: int, max_zoom: float):
        if not self.ready:
            raise MapNotReadyError("Map is not initialized yet")
        self.viewport = fit_bounds(bounds, self.width, self.height, padding, max_zoom)

    def set_view(self, center: LatLng, zoom: float):
        if not self.ready:
            raise MapNotReadyError("Map is not initialized yet")
        self.viewport = center_on(center, zoom)

    def deck(self, markers, route: Sequence[LatLng] = (), pickup_radius: Optional[Tuple[LatLng, float]] = None) -> pdk.Deck:
        if not self.ready:
            raise MapNotReadyError("Map is not initialized yet")
        layers = []
        if pickup_radius is not None:
            (lat, lng), radius_m = pickup_radius
            layers.append(pdk.Layer(
                "ScatterplotLayer",
                data=[{"position": [lng, lat], "label": "Pickup area"}],
                get_position="position",
                get_radius=radius_m,
                get_fill_color=_hex_to_rgb("#059669") + [25],
                get_line_color=_hex_to_rgb("#059669") + [128],
                stroked=True,
                line_width_min_pixels=2,
            ))
        if len(route) >= 2:
            layers.append(pdk.Layer(
                "PathLayer",
                data=[{"path": [[lng, lat] for lat, lng in route], "label": "Route"}],
                get_path="path",
                get_color=[0, 0, 0, 204],
                width_min_pixels=4,
            ))
        layers.append(pdk.Layer(
            "ScatterplotLayer",
            data=[
                {
                    "position": [m.longitude, m.latitude],
                    "color": _hex_to_rgb(m.color),
                    "radius": m.size,
                    "label": m.label,
                }
                for m in markers
            ],
            get_position="position",
            get_fill_color="color",
            get_radius="radius",
            radius_units="pixels",
            stroked=True,
            get_line_color=[255, 255, 255],
            line_width_min_pixels=3,
            pickable=True,
        ))
        view_state = pdk.ViewState(
            latitude=self.viewport.latitude,
            longitude=self.viewport.longitude,
            zoom=self.viewport.zoom,
        )
        return pdk.Deck(
            layers=layers,
            initial_view_state=view_state,
            map_provider="carto",
            map_style="light",
            tooltip={"html": "{label}"},
        )

import os
from dataclasses import dataclass

import streamlit as st


def load_env_vars():
    """Copy Streamlit secrets into the environment without overriding it."""
    try:
        secrets = dict(st.secrets)
    except FileNotFoundError:
        # no secrets.toml, plain environment only
        return
    for k, v in secrets.items():
        if isinstance(v, (str, int, float)):
            os.environ.setdefault(k, str(v))


@dataclass(frozen=True)
class Settings:
    supabase_url: str
    supabase_key: str
    ors_api_key: str
    app_url: str
    geocoder_user_agent: str
    map_default_lat: float
    map_default_lng: float
    map_default_zoom: int

    @classmethod
    def from_env(cls):
        load_env_vars()
        return cls(
            supabase_url=os.getenv("SUPABASE_URL", "").strip(),
            supabase_key=os.getenv("SUPABASE_KEY", "").strip(),
            ors_api_key=os.getenv("ORS_API_KEY", "").strip(),
            app_url=os.getenv("APP_URL", "http://localhost:8501").strip(),
            geocoder_user_agent=os.getenv("GEOCODER_USER_AGENT", "tripconnect").strip(),
            map_default_lat=float(os.getenv("MAP_DEFAULT_LAT", "28.6139")),
            map_default_lng=float(os.getenv("MAP_DEFAULT_LNG", "77.2090")),
            map_default_zoom=int(os.getenv("MAP_DEFAULT_ZOOM", "13")),
        )

    @property
    def has_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

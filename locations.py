import logging
from typing import Dict, Iterable, List, Optional

from models import LocationSample, Role

logger = logging.getLogger(__name__)

TABLE = "location_samples"


def latest_per_actor(rows: Iterable[LocationSample]) -> Dict[str, LocationSample]:
    """Keep the newest sample for every actor.

    Input order does not matter: an actor's entry is only replaced by a sample
    with a strictly greater timestamp, so on ties the first row seen stays.
    """
    latest: Dict[str, LocationSample] = {}
    for sample in rows:
        current = latest.get(sample.actor_id)
        if current is None or sample.recorded_at > current.recorded_at:
            latest[sample.actor_id] = sample
    return latest


class LocationStore:
    """Read side of the append-only location_samples table."""

    def __init__(self, store):
        self.store = store

    async def fetch_latest(self, role: Role, trip_id: Optional[str] = None) -> Dict[str, LocationSample]:
        eq = {"role": Role(role).value}
        if trip_id:
            eq["trip_id"] = trip_id
        rows = await self.store.select(TABLE, eq=eq, order="recorded_at", desc=True)
        return latest_per_actor(LocationSample(**row) for row in rows)

    async def history(self, actor_id: str, limit: int = 50) -> List[LocationSample]:
        rows = await self.store.select(
            TABLE, eq={"actor_id": actor_id}, order="recorded_at", desc=True, limit=limit
        )
        return [LocationSample(**row) for row in rows]

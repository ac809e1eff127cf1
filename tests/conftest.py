"""Shared fakes: an in-memory stand-in for the Supabase table gateway."""

from __future__ import annotations

import copy
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from errors import MapNotReadyError, WriteError
from models import Actor, Role


def _comparable(value):
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return value


class InMemoryStore:
    """Implements the SupabaseStore interface over plain dicts."""

    def __init__(self):
        self.tables = {"profiles": [], "trips": [], "bookings": [], "location_samples": []}
        self.reject_inserts = None
        self.calls = []

    def add(self, table, **row):
        row.setdefault("id", str(uuid.uuid4()))
        self.tables[table].append(row)
        return row

    async def insert(self, table, payload):
        self.calls.append(("insert", table))
        if self.reject_inserts and table in self.reject_inserts:
            raise WriteError(f"Insert on {table} failed. RLS", permission_denied=True)
        row = copy.deepcopy(payload)
        row.setdefault("id", str(uuid.uuid4()))
        now = datetime.now(timezone.utc).isoformat()
        if table in ("trips", "bookings", "profiles"):
            row.setdefault("created_at", now)
            row.setdefault("updated_at", now)
        self.tables[table].append(row)
        return copy.deepcopy(row)

    async def select(self, table, eq=None, in_=None, gt=None, gte=None, lte=None,
                     ilike=None, order=None, desc=False, limit=None):
        self.calls.append(("select", table))
        rows = []
        for row in self.tables[table]:
            if any(row.get(k) != v for k, v in (eq or {}).items()):
                continue
            if any(row.get(k) not in list(v) for k, v in (in_ or {}).items()):
                continue
            if any(row.get(k) is None or _comparable(row[k]) <= _comparable(v) for k, v in (gt or {}).items()):
                continue
            if any(row.get(k) is None or _comparable(row[k]) < _comparable(v) for k, v in (gte or {}).items()):
                continue
            if any(row.get(k) is None or _comparable(row[k]) > _comparable(v) for k, v in (lte or {}).items()):
                continue
            if any(v.lower() not in str(row.get(k, "")).lower() for k, v in (ilike or {}).items()):
                continue
            rows.append(copy.deepcopy(row))
        if order:
            rows.sort(key=lambda r: _comparable(r.get(order)), reverse=desc)
        if limit:
            rows = rows[:limit]
        return rows

    async def update(self, table, row_id, payload):
        self.calls.append(("update", table))
        for row in self.tables[table]:
            if row["id"] == row_id:
                row.update(copy.deepcopy(payload))
                return copy.deepcopy(row)
        raise WriteError(f"Update of {table} {row_id} matched no row.", permission_denied=True)

    async def delete(self, table, row_id):
        self.calls.append(("delete", table))
        self.tables[table] = [r for r in self.tables[table] if r["id"] != row_id]


def make_client(data=None, error=None):
    """A chainable postgrest query double whose execute() resolves to data."""
    query = MagicMock()
    for name in ("select", "insert", "update", "delete", "eq", "in_", "gt", "gte", "lte", "ilike", "order", "limit"):
        getattr(query, name).return_value = query
    if error is not None:
        query.execute = AsyncMock(side_effect=error)
    else:
        query.execute = AsyncMock(return_value=MagicMock(data=data))
    client = MagicMock()
    client.table.return_value = query
    return client, query


class RecordingMapView:
    """Map widget double that records viewport calls."""

    def __init__(self, ready=True):
        self.ready = ready
        self.calls = []

    def fit_bounds(self, bounds, padding, max_zoom):
        if not self.ready:
            raise MapNotReadyError("not yet")
        self.calls.append(("fit_bounds", list(bounds), padding, max_zoom))

    def set_view(self, center, zoom):
        if not self.ready:
            raise MapNotReadyError("not yet")
        self.calls.append(("set_view", tuple(center), zoom))


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def driver():
    return Actor(id="driver-1", role=Role.DRIVER, email="driver@example.com")


@pytest.fixture
def passenger():
    return Actor(id="passenger-1", role=Role.PASSENGER, email="rider@example.com")


@pytest.fixture
def tomorrow():
    return datetime.now(timezone.utc) + timedelta(days=1)

import logging

import httpx
from supabase import AsyncClient, PostgrestAPIError, acreate_client

from errors import PermissionDeniedError, ReadError, WriteError

logger = logging.getLogger(__name__)

TABLES = ("profiles", "trips", "bookings", "location_samples")

RLS_HINT = (
    "Blocked by Supabase Row-Level Security (RLS). Check that you are signed in "
    "and that the policies in supabase/migrations have been applied."
)


async def create_store(url: str, key: str):
    client = await acreate_client(url, key)
    return SupabaseStore(client)


def is_permission_error(err) -> bool:
    """RLS rejections surface as 42501 or a 'row-level security' message."""
    code = str(getattr(err, "code", "") or "")
    msg = str(getattr(err, "message", None) or err).lower()
    return code == "42501" or "row-level security" in msg or "permission denied" in msg


class SupabaseStore:
    """Thin async gateway over the Supabase tables.

    Writes raise WriteError. Reads raise PermissionDeniedError when RLS blocks
    them and ReadError for any other backend or transport failure. Every method
    returns plain row dicts.
    """

    def __init__(self, client: AsyncClient):
        self.client = client

    async def insert(self, table: str, payload: dict) -> dict:
        try:
            res = await self.client.table(table).insert(payload).execute()
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise self._write_error("Insert", table, e) from e
        if not res.data:
            # RLS can hide the returned representation without raising
            raise WriteError(f"Insert into {table} returned no row. {RLS_HINT}", permission_denied=True)
        return res.data[0]

    async def select(
        self,
        table: str,
        eq: dict = None,
        in_: dict = None,
        gt: dict = None,
        gte: dict = None,
        lte: dict = None,
        ilike: dict = None,
        order: str = None,
        desc: bool = False,
        limit: int = None,
    ) -> list:
        query = self.client.table(table).select("*")
        for k, v in (eq or {}).items():
            query = query.eq(k, v)
        for k, v in (in_ or {}).items():
            query = query.in_(k, list(v))
        for k, v in (gt or {}).items():
            query = query.gt(k, v)
        for k, v in (gte or {}).items():
            query = query.gte(k, v)
        for k, v in (lte or {}).items():
            query = query.lte(k, v)
        for k, v in (ilike or {}).items():
            query = query.ilike(k, f"%{v}%")
        if order:
            query = query.order(order, desc=desc)
        if limit:
            query = query.limit(limit)
        try:
            res = await query.execute()
        except PostgrestAPIError as e:
            if is_permission_error(e):
                raise PermissionDeniedError(f"Reading {table} is not allowed. {RLS_HINT}") from e
            logger.warning("Select on %s failed: %s", table, e.message)
            raise ReadError(f"Loading {table} failed: {e.message}") from e
        except httpx.HTTPError as e:
            logger.warning("Select on %s failed: %s", table, e)
            raise ReadError(f"Could not reach the server while loading {table}.") from e
        return res.data or []

    async def update(self, table: str, row_id: str, payload: dict) -> dict:
        try:
            res = await self.client.table(table).update(payload).eq("id", row_id).execute()
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise self._write_error("Update", table, e) from e
        if not res.data:
            raise WriteError(f"Update of {table} {row_id} matched no row. {RLS_HINT}", permission_denied=True)
        return res.data[0]

    async def delete(self, table: str, row_id: str) -> None:
        try:
            await self.client.table(table).delete().eq("id", row_id).execute()
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise self._write_error("Delete", table, e) from e

    @staticmethod
    def _write_error(action, table, err):
        denied = is_permission_error(err)
        logger.warning("%s on %s rejected: %s", action, table, getattr(err, "message", err))
        if denied:
            return WriteError(f"{action} on {table} failed. {RLS_HINT}", permission_denied=True)
        return WriteError(f"{action} on {table} failed: {getattr(err, 'message', err)}")

"""Device position primitives: read once, or watch continuously.

A PositionSource is whatever delivers fixes from the device. The Streamlit UI
feeds a QueuePositionSource with positions the user reports from the browser.
"""
import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from errors import PermissionDeniedError, PositionTimeoutError, TripConnectError

logger = logging.getLogger(__name__)


def utcnow():
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class GeolocationOptions:
    high_accuracy: bool = True
    timeout_ms: int = 10000
    max_sample_age_ms: Optional[int] = 1000


@dataclass(frozen=True)
class Position:
    latitude: float
    longitude: float
    heading: Optional[float] = None
    speed: Optional[float] = None
    accuracy: Optional[float] = None
    timestamp: datetime = field(default_factory=utcnow)


class PositionSource:
    async def read(self, high_accuracy: bool) -> Position:
        raise NotImplementedError


class QueuePositionSource(PositionSource):
    """Fixes pushed in from outside; an exception pushed in is raised on read."""

    def __init__(self):
        self.queue = asyncio.Queue()

    def push(self, item):
        self.queue.put_nowait(item)

    async def read(self, high_accuracy: bool) -> Position:
        item = await self.queue.get()
        if isinstance(item, BaseException):
            raise item
        return item


@dataclass
class WatchHandle:
    id: int
    task: Optional[asyncio.Task] = None
    cleared: bool = False

    @property
    def active(self) -> bool:
        # a cancelled task only finishes on a later loop turn
        return not self.cleared and self.task is not None and not self.task.done()


async def _maybe_await(result):
    if inspect.isawaitable(result):
        await result


class Geolocation:
    def __init__(self, source: PositionSource, clock: Callable[[], datetime] = utcnow):
        self.source = source
        self.clock = clock
        self._ids = itertools.count(1)
        self._watches: Dict[int, WatchHandle] = {}

    def is_fresh(self, position: Position, max_age_ms: Optional[int]) -> bool:
        if max_age_ms is None:
            return True
        age = (self.clock() - position.timestamp).total_seconds() * 1000
        return age <= max_age_ms

    async def _next_fresh(self, options: GeolocationOptions) -> Position:
        while True:
            position = await self.source.read(options.high_accuracy)
            if self.is_fresh(position, options.max_sample_age_ms):
                return position
            logger.debug("Discarding stale fix from %s", position.timestamp.isoformat())

    async def get_current_position(self, options: GeolocationOptions = GeolocationOptions()) -> Position:
        try:
            return await asyncio.wait_for(self._next_fresh(options), options.timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise PositionTimeoutError(f"No position within {options.timeout_ms} ms") from None

    def watch_position(self, on_position, on_error=None, options: GeolocationOptions = GeolocationOptions()) -> WatchHandle:
        """Start a watch. Callbacks may be plain functions or coroutines.

        A timeout reports an error and keeps watching. A permission denial
        ends the watch.
        """
        handle = WatchHandle(id=next(self._ids))
        handle.task = asyncio.get_running_loop().create_task(
            self._watch(handle, on_position, on_error, options)
        )
        self._watches[handle.id] = handle
        return handle

    async def _watch(self, handle, on_position, on_error, options):
        try:
            while True:
                try:
                    position = await asyncio.wait_for(self._next_fresh(options), options.timeout_ms / 1000)
                except asyncio.TimeoutError:
                    err = PositionTimeoutError(f"No position within {options.timeout_ms} ms")
                    if on_error is not None:
                        await _maybe_await(on_error(err))
                    continue
                except TripConnectError as err:
                    if on_error is not None:
                        await _maybe_await(on_error(err))
                    if isinstance(err, PermissionDeniedError):
                        return
                    continue
                await _maybe_await(on_position(position))
        finally:
            self._watches.pop(handle.id, None)

    def clear_watch(self, handle: Optional[WatchHandle]) -> None:
        if handle is None:
            return
        handle.cleared = True
        self._watches.pop(handle.id, None)
        if handle.task is not None and not handle.task.done():
            handle.task.cancel()

    @property
    def active_watches(self) -> int:
        return sum(1 for h in self._watches.values() if h.active)

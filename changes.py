import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from locations import TABLE

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    id: int
    topic: str
    callback: Callable[[dict], Any]
    active: bool = True
    channel: Optional[Any] = field(default=None, repr=False)


class ChangeFeed:
    """In-process change notifier keyed by topic."""

    def __init__(self):
        self._ids = itertools.count(1)
        self._subscriptions: Dict[int, Subscription] = {}

    @property
    def active_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, topic: str, callback) -> Subscription:
        sub = Subscription(id=next(self._ids), topic=topic, callback=callback)
        self._subscriptions[sub.id] = sub
        logger.debug("Subscribed #%s to %s", sub.id, topic)
        return sub

    def unsubscribe(self, sub: Optional[Subscription]) -> None:
        if sub is None or not sub.active:
            return
        sub.active = False
        self._subscriptions.pop(sub.id, None)
        self._release(sub)
        logger.debug("Unsubscribed #%s from %s", sub.id, sub.topic)

    def publish(self, topic: str, payload: Optional[dict] = None) -> int:
        delivered = 0
        for sub in list(self._subscriptions.values()):
            if sub.topic != topic or not sub.active:
                continue
            self._deliver(sub, payload or {})
            delivered += 1
        return delivered

    def _deliver(self, sub, payload):
        try:
            sub.callback(payload)
        except Exception:
            logger.exception("Change callback for %s failed", sub.topic)

    def _release(self, sub):
        pass


class SupabaseChangeFeed(ChangeFeed):
    """Binds each subscription to a Supabase Realtime postgres_changes channel.

    Must be used from the event loop that owns the async client.
    """

    def __init__(self, client, table: str = TABLE, tables=("trips", "bookings")):
        super().__init__()
        self.client = client
        self.table = table
        self.tables = set(tables)
        self._pending = set()

    def subscribe(self, topic: str, callback) -> Subscription:
        sub = super().subscribe(topic, callback)
        table, bind = self._binding(topic)
        channel = self.client.channel(f"{table}:{topic}:{sub.id}")
        channel.on_postgres_changes(
            "*",
            schema="public",
            table=table,
            callback=lambda payload: self._on_change(sub, payload),
            **bind,
        )
        sub.channel = channel
        self._spawn(channel.subscribe())
        return sub

    def _binding(self, topic):
        """Whole-table topics watch their table, role topics filter the sample table."""
        if topic in self.tables:
            return topic, {}
        return self.table, {"filter": f"role=eq.{topic}"}

    def _on_change(self, sub, payload):
        if sub.active:
            self._deliver(sub, payload)

    def _release(self, sub):
        if sub.channel is not None:
            self._spawn(self.client.remove_channel(sub.channel))
            sub.channel = None

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task):
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Realtime channel operation failed: %s", task.exception())

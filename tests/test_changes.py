import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from changes import ChangeFeed, SupabaseChangeFeed


def test_publish_reaches_matching_topic_only():
    feed = ChangeFeed()
    drivers, passengers = [], []
    feed.subscribe("driver", drivers.append)
    feed.subscribe("passenger", passengers.append)

    delivered = feed.publish("driver", {"eventType": "INSERT"})

    assert delivered == 1
    assert drivers == [{"eventType": "INSERT"}]
    assert passengers == []


def test_unsubscribe_twice_leaves_zero_subscriptions():
    feed = ChangeFeed()
    sub = feed.subscribe("driver", lambda payload: None)
    assert feed.active_count == 1

    feed.unsubscribe(sub)
    feed.unsubscribe(sub)

    assert feed.active_count == 0
    assert feed.publish("driver") == 0


def test_failing_callback_does_not_block_others():
    feed = ChangeFeed()
    seen = []

    def boom(payload):
        raise RuntimeError("broken subscriber")

    feed.subscribe("driver", boom)
    feed.subscribe("driver", seen.append)

    feed.publish("driver", {"n": 1})

    assert seen == [{"n": 1}]


def _client():
    client = MagicMock()
    channel = MagicMock()
    channel.subscribe = AsyncMock()
    client.channel.return_value = channel
    client.remove_channel = AsyncMock()
    return client, channel


@pytest.mark.asyncio
async def test_supabase_feed_binds_postgres_changes():
    client, channel = _client()
    feed = SupabaseChangeFeed(client)
    seen = []

    feed.subscribe("driver", seen.append)
    await asyncio.sleep(0)

    kwargs = channel.on_postgres_changes.call_args.kwargs
    assert channel.on_postgres_changes.call_args.args == ("*",)
    assert kwargs["table"] == "location_samples"
    assert kwargs["filter"] == "role=eq.driver"
    channel.subscribe.assert_awaited_once()

    kwargs["callback"]({"eventType": "INSERT"})
    assert seen == [{"eventType": "INSERT"}]


@pytest.mark.asyncio
async def test_supabase_feed_unsubscribe_is_synchronous_and_idempotent():
    client, channel = _client()
    feed = SupabaseChangeFeed(client)
    seen = []
    sub = feed.subscribe("passenger", seen.append)
    callback = channel.on_postgres_changes.call_args.kwargs["callback"]

    feed.unsubscribe(sub)
    feed.unsubscribe(sub)
    assert feed.active_count == 0

    # late realtime events after teardown are dropped
    callback({"eventType": "INSERT"})
    assert seen == []

    await asyncio.sleep(0)
    client.remove_channel.assert_awaited_once_with(channel)


@pytest.mark.asyncio
async def test_supabase_feed_table_topics_watch_whole_table():
    client, channel = _client()
    feed = SupabaseChangeFeed(client)

    feed.subscribe("trips", lambda payload: None)
    await asyncio.sleep(0)

    kwargs = channel.on_postgres_changes.call_args.kwargs
    assert kwargs["table"] == "trips"
    assert "filter" not in kwargs

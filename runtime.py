import asyncio
import logging
import threading

logger = logging.getLogger(__name__)


class BackgroundLoop:
    """One asyncio loop on a daemon thread, shared by every Streamlit rerun.

    The Supabase async client, realtime channels and location watches all live
    on this loop; the script thread hands it coroutines with run().
    """

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self._serve, name="tripconnect-loop", daemon=True)
        self.thread.start()

    def _serve(self):
        asyncio.set_event_loop(self.loop)
        logger.info("Background event loop started")
        self.loop.run_forever()

    def run(self, coro, timeout: float = 30):
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout)

    def call(self, fn, *args):
        """Run a plain function on the loop thread and wait for its result."""
        async def _call():
            return fn(*args)
        return self.run(_call())

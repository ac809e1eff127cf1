import asyncio
import logging

logger = logging.getLogger(__name__)

FUNCTION_NAME = "send-booking-notification"
KINDS = ("booking_created", "booking_accepted", "booking_rejected")


class BookingNotifier:
    """Fire-and-forget booking emails through the Supabase edge function."""

    def __init__(self, client, function_name: str = FUNCTION_NAME):
        self.client = client
        self.function_name = function_name
        self._pending = set()

    async def dispatch(self, booking_id: str, kind: str) -> bool:
        if kind not in KINDS:
            raise ValueError(f"Unknown notification kind: {kind}")
        try:
            await self.client.functions.invoke(
                self.function_name,
                invoke_options={"body": {"bookingId": booking_id, "type": kind}},
            )
        except Exception as e:
            # delivery problems are never surfaced to the user
            logger.warning("Failed to send %s notification for booking %s: %s", kind, booking_id, e)
            return False
        logger.info("Sent %s notification for booking %s", kind, booking_id)
        return True

    def schedule(self, booking_id: str, kind: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self.dispatch(booking_id, kind))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def flush(self):
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

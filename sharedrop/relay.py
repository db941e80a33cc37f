"""
Signaling relay.

Polls a room's mailbox log and hands each message addressed to the local peer
to a dispatcher exactly once, in log order. Sending appends to the same log.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from .errors import StoreUnavailable
from .mailbox import MailboxStore
from .models import BROADCAST, SignalMessage, SignalType, parse_signal

logger = logging.getLogger(__name__)

Dispatcher = Callable[[Any], Awaitable[None]]
InvalidHandler = Callable[[SignalMessage, ValidationError], Awaitable[None]]


def select_messages(
    log: Sequence[SignalMessage], local_id: str, cursor: int
) -> Tuple[List[SignalMessage], int]:
    """Pick the messages of ``log`` the local peer has not seen yet.

    Returns the selected messages in log order and the new cursor (the
    highest seq looked at, whether selected or not).
    """
    selected = []
    new_cursor = cursor
    for message in log:
        if message.seq <= cursor:
            continue
        new_cursor = max(new_cursor, message.seq)
        if message.sender == local_id:
            continue
        if message.to != local_id and message.to != BROADCAST:
            continue
        if local_id in message.processed_by:
            continue
        selected.append(message)
    return selected, new_cursor


class SignalingRelay:
    def __init__(
        self,
        store: MailboxStore,
        room_id: str,
        local_id: str,
        dispatch: Dispatcher,
        on_invalid: Optional[InvalidHandler] = None,
        poll_interval: float = 2.5,
        local_name: Optional[str] = None,
        cursor: int = 0,
    ):
        self.store = store
        self.room_id = room_id
        self.local_id = local_id
        self.local_name = local_name
        self.poll_interval = poll_interval
        self.cursor = cursor
        self._dispatch = dispatch
        self._on_invalid = on_invalid
        self._poll_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"relay-{self.room_id}-{self.local_id[:6]}")
        logger.info(f"📡 Relay started for room {self.room_id} at #{self.cursor}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"🛑 Relay stopped for room {self.room_id}")

    def wake(self) -> None:
        self._wakeup.set()

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"❌ Relay poll error in room {self.room_id}: {e}")

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

    async def poll_once(self) -> int:
        """Fetch, select and dispatch new messages. Returns how many were dispatched."""
        async with self._poll_lock:
            try:
                log = await self.store.read_messages(self.room_id, after=self.cursor)
            except StoreUnavailable as e:
                logger.warning(f"⚠️ Mailbox unavailable, retrying next poll: {e}")
                return 0

            selected, new_cursor = select_messages(log, self.local_id, self.cursor)
            # Advance before dispatching so a failing handler can never cause redelivery
            self.cursor = new_cursor

            delivered = []
            for message in selected:
                delivered.append(message.seq)
                await self._deliver(message)

            if delivered:
                try:
                    await self.store.mark_processed(self.room_id, delivered, self.local_id)
                except StoreUnavailable as e:
                    logger.warning(f"⚠️ Could not mark {len(delivered)} messages processed: {e}")
            return len(delivered)

    async def _deliver(self, message: SignalMessage) -> None:
        try:
            signal = parse_signal(message)
        except ValidationError as e:
            logger.warning(
                f"🚫 Quarantined malformed {message.type.value} #{message.seq} from {message.sender}"
            )
            if self._on_invalid is not None:
                await self._guard(self._on_invalid(message, e), message)
            return

        logger.info(f"📨 Received {signal.type} from {signal.sender} (#{signal.seq})")
        await self._guard(self._dispatch(signal), message)

    async def _guard(self, coro, message: SignalMessage) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"❌ Error handling {message.type.value} #{message.seq} from {message.sender}: {e}")

    async def send(
        self, type: SignalType, to: str = BROADCAST, data: Optional[Dict[str, Any]] = None
    ) -> SignalMessage:
        message = SignalMessage(
            type=type,
            sender=self.local_id,
            to=to,
            data=data or {},
            from_name=self.local_name,
            timestamp=time.time(),
        )
        stored = await self.store.append_message(self.room_id, message)
        logger.info(f"📤 Sent {type.value} to {to} (#{stored.seq})")
        self.wake()
        return stored

import logging
from typing import Callable, List

logger = logging.getLogger(__name__)


class EventChannel:
    """Observers for one event category.

    Handlers run synchronously in subscription order. A handler that raises
    is logged and skipped so the emitter is never disturbed.
    """

    def __init__(self, name: str):
        self.name = name
        self._handlers: List[Callable[..., None]] = []

    def subscribe(self, handler: Callable[..., None]) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe():
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def emit(self, *args) -> None:
        for handler in list(self._handlers):
            try:
                handler(*args)
            except Exception as e:
                logger.error(f"❌ Error in {self.name} handler {handler!r}: {e}")

    def __len__(self):
        return len(self._handlers)


class ShareDropEvents:
    """Event channels exposed by a ShareDropClient.

    peer_connected(peer_id, name)
    peer_disconnected(peer_id)
    negotiation_failed(peer_id, error)
    file_incoming(transfer)
    file_received(transfer, data)
    transfer_progress(transfer_id, progress)
    transfer_complete(transfer)
    transfer_failed(transfer, reason)
    """

    def __init__(self):
        self.peer_connected = EventChannel("peer_connected")
        self.peer_disconnected = EventChannel("peer_disconnected")
        self.negotiation_failed = EventChannel("negotiation_failed")
        self.file_incoming = EventChannel("file_incoming")
        self.file_received = EventChannel("file_received")
        self.transfer_progress = EventChannel("transfer_progress")
        self.transfer_complete = EventChannel("transfer_complete")
        self.transfer_failed = EventChannel("transfer_failed")

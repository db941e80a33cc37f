"""
Transport interface consumed by the session negotiator.

A transport negotiates network addresses and media with a single remote peer
and, once connected, offers one ordered reliable data channel. Concrete
implementations live in sharedrop.rtc.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

CONNECTED = "connected"
DISCONNECTED = "disconnected"
FAILED = "failed"
CLOSED = "closed"

TERMINAL_STATES = frozenset({DISCONNECTED, FAILED, CLOSED})


class Transport(ABC):
    """Connection to one remote peer.

    Callbacks are plain functions invoked from the event loop:

    - on_state_change(state): connection state changes, e.g. "connected"
    - on_candidate(candidate): locally gathered ICE candidate, a dict with
      candidate / sdpMid / sdpMLineIndex
    - on_channel_open(): the data channel is open
    - on_message(data): text message received on the data channel
    """

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        self.on_state_change: Optional[Callable[[str], None]] = None
        self.on_candidate: Optional[Callable[[Dict[str, Any]], None]] = None
        self.on_channel_open: Optional[Callable[[], None]] = None
        self.on_message: Optional[Callable[[str], None]] = None

    @abstractmethod
    async def create_offer(self) -> Dict[str, Any]:
        """Open the data channel as initiator and return the local offer"""

    @abstractmethod
    async def create_answer(self, offer: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a remote offer and return the local answer"""

    @abstractmethod
    async def apply_answer(self, answer: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def add_remote_candidate(self, candidate: Dict[str, Any]) -> None:
        ...

    @property
    @abstractmethod
    def has_remote_description(self) -> bool:
        ...

    @property
    @abstractmethod
    def channel_open(self) -> bool:
        ...

    @abstractmethod
    async def send(self, data: str) -> None:
        """Send one message; returns once the channel has accepted it"""

    @abstractmethod
    async def close(self) -> None:
        ...

    def _emit_state(self, state: str) -> None:
        if self.on_state_change:
            self.on_state_change(state)

    def _emit_candidate(self, candidate: Dict[str, Any]) -> None:
        if self.on_candidate:
            self.on_candidate(candidate)

    def _emit_channel_open(self) -> None:
        if self.on_channel_open:
            self.on_channel_open()

    def _emit_message(self, data: str) -> None:
        if self.on_message:
            self.on_message(data)


class TransportFactory(ABC):
    @abstractmethod
    def create(self, peer_id: str) -> Transport:
        ...

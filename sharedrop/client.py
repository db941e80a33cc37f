"""
ShareDropClient: join a room, connect to its peers and exchange files.

    async with ShareDropClient(name="Laptop") as client:
        client.events.file_received.subscribe(on_file)
        room_id = await client.create_room()
        ...
        transfer_id = client.send_file("report.pdf", peer_id)
"""

import logging
import os
from typing import Iterable, List, Optional, Union

from .config import Settings, get_settings
from .errors import ChannelNotReady, ShareDropError
from .events import ShareDropEvents
from .mailbox import HttpMailboxStore, MailboxStore
from .models import BROADCAST, FileTransfer, Peer, SignalType, generate_id
from .negotiator import PeerSession, SessionNegotiator
from .relay import SignalingRelay
from .transfer import LocalFile, TransferEngine
from .transport import TransportFactory

logger = logging.getLogger(__name__)

FileLike = Union[LocalFile, str, os.PathLike]


class ShareDropClient:
    def __init__(
        self,
        store: Optional[MailboxStore] = None,
        transport_factory: Optional[TransportFactory] = None,
        settings: Optional[Settings] = None,
        name: Optional[str] = None,
    ):
        self.settings = settings or get_settings()
        self.local_id = generate_id()
        self.local_name = name
        self.room_id: Optional[str] = None
        self.events = ShareDropEvents()

        self._owns_store = store is None
        self.store = store or HttpMailboxStore(
            self.settings.mailbox_url, timeout=self.settings.request_timeout
        )
        if transport_factory is None:
            from .rtc import AiortcTransportFactory
            transport_factory = AiortcTransportFactory(self.settings)

        self.relay: Optional[SignalingRelay] = None
        self.negotiator = SessionNegotiator(
            self.local_id,
            transport_factory,
            self._send_signal,
            self.events,
            on_channel_message=self._on_channel_message,
        )
        self.transfer_engine = TransferEngine(
            self.negotiator.transport_for,
            self.events,
            chunk_size=self.settings.chunk_size,
        )
        self.negotiator.session_closed.subscribe(self.transfer_engine.abort_peer)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ---- rooms ----

    def _peer(self) -> Peer:
        return Peer(id=self.local_id, name=self.local_name)

    def _new_relay(self, room_id: str, cursor: int) -> SignalingRelay:
        return SignalingRelay(
            self.store,
            room_id,
            self.local_id,
            dispatch=self.negotiator.handle_signal,
            on_invalid=self.negotiator.reject_malformed,
            poll_interval=self.settings.poll_interval,
            local_name=self.local_name,
            cursor=cursor,
        )

    def _ensure_not_in_room(self) -> None:
        if self.room_id is not None:
            raise ShareDropError(f"Already in room {self.room_id}; disconnect first")

    async def create_room(self, room_id: Optional[str] = None) -> str:
        """Create a room and start listening for peers joining it.

        Reusing the id of a room that already exists joins that room instead,
        so the peers already in it offer connections to us.
        """
        self._ensure_not_in_room()
        room_id = await self.store.create_room(self._peer(), room_id)
        room = await self.store.read_room(room_id)
        if room.creator_id != self.local_id:
            await self._enter_as_joiner(room_id)
            logger.info(f"🚪 Room {room_id} already existed; joined as {self.local_name or self.local_id}")
            return room_id

        cursor = room.messages[-1].seq if room.messages else 0
        self.room_id = room_id
        self.relay = self._new_relay(room_id, cursor)
        self.relay.start()
        logger.info(f"🏠 Created room {room_id} as {self.local_name or self.local_id}")
        return room_id

    async def join_room(self, room_id: str) -> None:
        """Join an existing room; peers already in it will offer connections"""
        self._ensure_not_in_room()
        # Raises RoomNotFound for an unknown room
        await self.store.append_peer(room_id, self._peer())
        await self._enter_as_joiner(room_id)
        logger.info(f"🚪 Joined room {room_id} as {self.local_name or self.local_id}")

    async def _enter_as_joiner(self, room_id: str) -> None:
        relay = self._new_relay(room_id, cursor=0)
        joined = await relay.send(SignalType.JOIN, BROADCAST, {"name": self.local_name} if self.local_name else {})
        # Earlier history is not ours to answer
        relay.cursor = joined.seq

        self.room_id = room_id
        self.relay = relay
        relay.start()

    async def _send_signal(self, type: SignalType, to: str, data: dict):
        if self.relay is None:
            raise ShareDropError("Not in a room")
        return await self.relay.send(type, to, data)

    def room_url(self, base_url: Optional[str] = None) -> str:
        if self.room_id is None:
            raise ShareDropError("Not in a room")
        base = base_url or self.settings.public_url or self.settings.mailbox_url
        return f"{base.rstrip('/')}?room={self.room_id}"

    def set_local_name(self, name: Optional[str]) -> None:
        self.local_name = name
        if self.relay is not None:
            self.relay.local_name = name

    # ---- peers and transfers ----

    @property
    def peers(self) -> List[Peer]:
        return [Peer(id=s.peer_id, name=s.display_name) for s in self.negotiator.connected_sessions]

    def get_session(self, peer_id: str) -> Optional[PeerSession]:
        return self.negotiator.get_session(peer_id)

    @property
    def transfers(self) -> List[FileTransfer]:
        return list(self.transfer_engine.transfers.values())

    def _on_channel_message(self, peer_id: str, data: str) -> None:
        self.transfer_engine.handle_message(peer_id, data)

    def send_file(self, file: FileLike, peer_id: str) -> str:
        """Start sending a file to a connected peer.

        Raises ChannelNotReady if the peer's data channel is not open.
        """
        if not isinstance(file, LocalFile):
            file = LocalFile.from_path(file)
        return self.transfer_engine.send_file(file, peer_id)

    def send_files(self, files: Iterable[FileLike], peer_ids: Optional[Iterable[str]] = None) -> List[str]:
        """Send every file to every given peer (default: all connected peers)"""
        targets = list(peer_ids) if peer_ids is not None else [p.id for p in self.peers]
        transfer_ids = []
        for file in files:
            if not isinstance(file, LocalFile):
                file = LocalFile.from_path(file)
            for peer_id in targets:
                try:
                    transfer_ids.append(self.send_file(file, peer_id))
                except ChannelNotReady as e:
                    logger.warning(f"⚠️ Failed to send {file.name}: {e}")
        return transfer_ids

    def cancel_transfer(self, transfer_id: str) -> bool:
        return self.transfer_engine.cancel_transfer(transfer_id)

    def clear_finished_transfers(self) -> int:
        """Forget completed and failed transfers; returns how many were dropped"""
        return len(self.transfer_engine.forget_finished())

    async def wait_for_transfer(self, transfer_id: str) -> FileTransfer:
        return await self.transfer_engine.wait(transfer_id)

    async def wait_idle(self) -> None:
        await self.negotiator.wait_idle()

    # ---- teardown ----

    async def disconnect(self) -> None:
        """Leave the room, stop polling and close every session"""
        relay = self.relay
        try:
            if relay is not None:
                try:
                    await relay.send(SignalType.LEAVE, BROADCAST)
                except ShareDropError as e:
                    # The room may already be gone from the mailbox
                    logger.warning(f"⚠️ Could not announce leave: {e}")
        finally:
            if relay is not None:
                await relay.stop()
            await self.negotiator.close_all()
            if self.room_id is not None:
                logger.info(f"👋 Left room {self.room_id}")
            self.relay = None
            self.room_id = None

    async def close(self) -> None:
        try:
            await self.disconnect()
        finally:
            if self._owns_store:
                await self.store.close()

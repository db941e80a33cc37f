"""
Room mailbox: peer roster plus an append-only signaling log.

MemoryMailboxStore keeps rooms in process. HttpMailboxStore talks to the
mailbox server in sharedrop.server, which owns the log so that independent
processes never lose each other's appends.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

import httpx

from .errors import RoomNotFound, StoreUnavailable
from .models import Peer, Room, SignalMessage, generate_id

logger = logging.getLogger(__name__)


def generate_room_id() -> str:
    return generate_id()[:8]


class MailboxStore(ABC):

    @abstractmethod
    async def create_room(self, creator: Peer, room_id: Optional[str] = None) -> str:
        ...

    @abstractmethod
    async def read_room(self, room_id: str) -> Room:
        ...

    @abstractmethod
    async def append_peer(self, room_id: str, peer: Peer) -> List[Peer]:
        ...

    @abstractmethod
    async def append_message(self, room_id: str, message: SignalMessage) -> SignalMessage:
        ...

    @abstractmethod
    async def read_messages(self, room_id: str, after: int = 0) -> List[SignalMessage]:
        ...

    @abstractmethod
    async def mark_processed(self, room_id: str, seqs: Iterable[int], peer_id: str) -> None:
        ...

    async def close(self) -> None:
        pass


class MemoryMailboxStore(MailboxStore):
    def __init__(self):
        self.rooms: Dict[str, Room] = {}
        self._lock = asyncio.Lock()

    def _get(self, room_id: str) -> Room:
        room = self.rooms.get(room_id)
        if room is None:
            raise RoomNotFound(room_id)
        return room

    async def create_room(self, creator: Peer, room_id: Optional[str] = None) -> str:
        async with self._lock:
            if room_id is None:
                room_id = generate_room_id()
                while room_id in self.rooms:
                    room_id = generate_room_id()
            elif room_id in self.rooms:
                # Reusing an existing id just joins the creator to it
                room = self.rooms[room_id]
                if not room.has_peer(creator.id):
                    room.peers.append(creator)
                return room_id

            self.rooms[room_id] = Room(
                id=room_id,
                creator_id=creator.id,
                creator_name=creator.name,
                peers=[creator],
            )
        logger.info(f"🏠 Room {room_id} created by {creator.name or creator.id}")
        return room_id

    async def read_room(self, room_id: str) -> Room:
        async with self._lock:
            return self._get(room_id).model_copy(deep=True)

    async def append_peer(self, room_id: str, peer: Peer) -> List[Peer]:
        async with self._lock:
            room = self._get(room_id)
            if not room.has_peer(peer.id):
                room.peers.append(peer)
                logger.info(f"🚪 Peer {peer.name or peer.id} joined room {room_id}")
                logger.debug(f"📋 Room {room_id} peers: {[p.id for p in room.peers]}")
            return [p.model_copy() for p in room.peers]

    async def append_message(self, room_id: str, message: SignalMessage) -> SignalMessage:
        async with self._lock:
            room = self._get(room_id)
            stored = message.model_copy(update={
                "seq": len(room.messages) + 1,
                "processed_by": [],
            })
            room.messages.append(stored)
            logger.debug(
                f"📨 [{room_id}] #{stored.seq} {stored.type.value}: {stored.sender} -> {stored.to}"
            )
            return stored.model_copy()

    async def read_messages(self, room_id: str, after: int = 0) -> List[SignalMessage]:
        async with self._lock:
            room = self._get(room_id)
            # seq is 1-based and dense, so the tail starts at index `after`
            return [m.model_copy(deep=True) for m in room.messages[max(after, 0):]]

    async def mark_processed(self, room_id: str, seqs: Iterable[int], peer_id: str) -> None:
        async with self._lock:
            room = self._get(room_id)
            for seq in seqs:
                if 1 <= seq <= len(room.messages):
                    message = room.messages[seq - 1]
                    if peer_id not in message.processed_by:
                        message.processed_by.append(peer_id)

    def get_debug_info(self) -> dict:
        return {
            "rooms": {
                rid: {
                    "creator": room.creator_id,
                    "peers": [p.to_wire() for p in room.peers],
                    "messages": len(room.messages),
                }
                for rid, room in self.rooms.items()
            },
            "total_rooms": len(self.rooms),
        }


class HttpMailboxStore(MailboxStore):
    """Mailbox client for the sharedrop mailbox server"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
        )

    async def _request(self, method: str, path: str, room_id: Optional[str] = None, **kwargs):
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"⚠️ Mailbox {method} {path} failed: {e}")
            raise StoreUnavailable(f"Mailbox unreachable at {self.base_url}: {e}") from e

        if response.status_code == 404 and room_id is not None:
            raise RoomNotFound(room_id)
        if response.status_code >= 400:
            raise StoreUnavailable(
                f"Mailbox {method} {path} returned {response.status_code}: {response.text}"
            )
        return response.json()

    async def create_room(self, creator: Peer, room_id: Optional[str] = None) -> str:
        body = {"creator": creator.to_wire()}
        if room_id is not None:
            body["roomId"] = room_id
        data = await self._request("POST", "/api/rooms", json=body)
        return data["id"]

    async def read_room(self, room_id: str) -> Room:
        data = await self._request("GET", f"/api/rooms/{room_id}", room_id=room_id)
        return Room.model_validate(data)

    async def append_peer(self, room_id: str, peer: Peer) -> List[Peer]:
        data = await self._request(
            "POST", f"/api/rooms/{room_id}/peers", room_id=room_id, json=peer.to_wire()
        )
        return [Peer.model_validate(p) for p in data["peers"]]

    async def append_message(self, room_id: str, message: SignalMessage) -> SignalMessage:
        data = await self._request(
            "POST", f"/api/rooms/{room_id}/messages", room_id=room_id, json=message.to_wire()
        )
        return SignalMessage.model_validate(data)

    async def read_messages(self, room_id: str, after: int = 0) -> List[SignalMessage]:
        data = await self._request(
            "GET", f"/api/rooms/{room_id}/messages", room_id=room_id, params={"after": after}
        )
        return [SignalMessage.model_validate(m) for m in data["messages"]]

    async def mark_processed(self, room_id: str, seqs: Iterable[int], peer_id: str) -> None:
        await self._request(
            "POST",
            f"/api/rooms/{room_id}/messages/processed",
            room_id=room_id,
            json={"peerId": peer_id, "seqs": list(seqs)},
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

from fastapi import FastAPI, HTTPException, Query, Request
from typing import List, Optional
import logging

from pydantic import Field

from .config import get_settings
from .errors import RoomNotFound
from .mailbox import MemoryMailboxStore
from .models import Peer, SignalMessage, WireModel

logger = logging.getLogger(__name__)


class CreateRoomRequest(WireModel):
    creator: Peer
    room_id: Optional[str] = None


class ProcessedRequest(WireModel):
    peer_id: str
    seqs: List[int] = Field(default_factory=list)


def create_app(store: Optional[MemoryMailboxStore] = None) -> FastAPI:
    app = FastAPI(title="ShareDrop Mailbox", version="1.0.0")
    app.state.store = store or MemoryMailboxStore()

    def get_store(request: Request) -> MemoryMailboxStore:
        return request.app.state.store

    @app.post("/api/rooms")
    async def create_room(body: CreateRoomRequest, request: Request):
        """Create a room with its creator as the first peer"""
        store = get_store(request)
        room_id = await store.create_room(body.creator, body.room_id)
        room = await store.read_room(room_id)
        return room.to_wire()

    @app.get("/api/rooms/{room_id}")
    async def get_room(room_id: str, request: Request):
        room = await _read_room(get_store(request), room_id)
        return room.to_wire()

    @app.get("/api/rooms/{room_id}/peers")
    async def get_room_peers(room_id: str, request: Request):
        """Get peers in a specific room"""
        room = await _read_room(get_store(request), room_id)
        return {"room_id": room_id, "peers": [p.to_wire() for p in room.peers]}

    @app.post("/api/rooms/{room_id}/peers")
    async def append_peer(room_id: str, peer: Peer, request: Request):
        peers = await _call(get_store(request).append_peer(room_id, peer), room_id)
        return {"room_id": room_id, "peers": [p.to_wire() for p in peers]}

    @app.post("/api/rooms/{room_id}/messages")
    async def append_message(room_id: str, message: SignalMessage, request: Request):
        stored = await _call(get_store(request).append_message(room_id, message), room_id)
        logger.info(f"🔄 Signal {stored.type.value}: {stored.sender} -> {stored.to} (#{stored.seq})")
        return stored.to_wire()

    @app.get("/api/rooms/{room_id}/messages")
    async def read_messages(room_id: str, request: Request, after: int = Query(default=0, ge=0)):
        messages = await _call(get_store(request).read_messages(room_id, after), room_id)
        return {"room_id": room_id, "messages": [m.to_wire() for m in messages]}

    @app.post("/api/rooms/{room_id}/messages/processed")
    async def mark_processed(room_id: str, body: ProcessedRequest, request: Request):
        await _call(get_store(request).mark_processed(room_id, body.seqs, body.peer_id), room_id)
        return {"room_id": room_id, "marked": len(body.seqs)}

    @app.get("/api/ice-servers")
    async def ice_servers():
        """ICE servers clients should use for the data transport"""
        return {"ice_servers": get_settings().ice_servers}

    @app.get("/api/debug")
    async def debug_info(request: Request):
        """Get server debug information"""
        return get_store(request).get_debug_info()

    return app


async def _read_room(store: MemoryMailboxStore, room_id: str):
    return await _call(store.read_room(room_id), room_id)


async def _call(coro, room_id: str):
    try:
        return await coro
    except RoomNotFound:
        logger.warning(f"❌ Room {room_id} not found")
        raise HTTPException(status_code=404, detail=f"Room {room_id} not found")


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    uvicorn.run("sharedrop.server:app", host=settings.host, port=settings.port)

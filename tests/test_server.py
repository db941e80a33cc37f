"""
Tests for sharedrop/server.py and HttpMailboxStore

- REST endpoints of the mailbox server
- HttpMailboxStore against the app over an in-process ASGI transport
- Error mapping: unreachable mailbox and unknown rooms
"""

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from sharedrop.errors import RoomNotFound, StoreUnavailable
from sharedrop.mailbox import HttpMailboxStore, MemoryMailboxStore
from sharedrop.models import BROADCAST, Peer, SignalMessage, SignalType
from sharedrop.server import create_app


@pytest.fixture
def app():
    return create_app(MemoryMailboxStore())


@pytest.fixture
def client(app):
    return TestClient(app)


def create_room(client, creator_id="a", name="Laptop", room_id=None):
    body = {"creator": {"id": creator_id, "name": name}}
    if room_id is not None:
        body["roomId"] = room_id
    response = client.post("/api/rooms", json=body)
    assert response.status_code == 200
    return response.json()


def post_signal(client, room_id, sender, to=BROADCAST, type="join", data=None):
    response = client.post(
        f"/api/rooms/{room_id}/messages",
        json={"type": type, "from": sender, "to": to, "data": data or {}},
    )
    assert response.status_code == 200
    return response.json()


# ============================================================================
# REST endpoints
# ============================================================================

class TestRoomEndpoints:

    def test_create_room(self, client):
        room = create_room(client)
        assert len(room["id"]) == 8
        assert room["creatorId"] == "a"
        assert room["creatorName"] == "Laptop"
        assert room["peers"] == [{"id": "a", "name": "Laptop"}]

    def test_create_room_with_id(self, client):
        room = create_room(client, room_id="kitchen")
        assert room["id"] == "kitchen"

    def test_get_room(self, client):
        room_id = create_room(client)["id"]
        response = client.get(f"/api/rooms/{room_id}")
        assert response.status_code == 200
        assert response.json()["id"] == room_id

    def test_get_unknown_room(self, client):
        response = client.get("/api/rooms/missing")
        assert response.status_code == 404

    def test_append_peer(self, client):
        room_id = create_room(client)["id"]
        response = client.post(f"/api/rooms/{room_id}/peers", json={"id": "b", "name": "Phone"})
        assert response.status_code == 200
        assert [p["id"] for p in response.json()["peers"]] == ["a", "b"]

        peers = client.get(f"/api/rooms/{room_id}/peers").json()["peers"]
        assert [p["id"] for p in peers] == ["a", "b"]

    def test_append_peer_unknown_room(self, client):
        response = client.post("/api/rooms/missing/peers", json={"id": "b"})
        assert response.status_code == 404


class TestMessageEndpoints:

    def test_append_assigns_seq(self, client):
        room_id = create_room(client)["id"]
        first = post_signal(client, room_id, "b")
        second = post_signal(client, room_id, "a", to="b", type="offer", data={"type": "offer", "sdp": "x"})
        assert (first["seq"], second["seq"]) == (1, 2)
        assert second["from"] == "a"
        assert second["data"] == {"type": "offer", "sdp": "x"}

    def test_read_after(self, client):
        room_id = create_room(client)["id"]
        for sender in ("a", "b", "c"):
            post_signal(client, room_id, sender)

        response = client.get(f"/api/rooms/{room_id}/messages", params={"after": 1})
        assert response.status_code == 200
        assert [m["from"] for m in response.json()["messages"]] == ["b", "c"]

    def test_read_rejects_negative_cursor(self, client):
        room_id = create_room(client)["id"]
        response = client.get(f"/api/rooms/{room_id}/messages", params={"after": -1})
        assert response.status_code == 422

    def test_append_rejects_unknown_type(self, client):
        room_id = create_room(client)["id"]
        response = client.post(
            f"/api/rooms/{room_id}/messages",
            json={"type": "hello", "from": "a", "to": BROADCAST},
        )
        assert response.status_code == 422

    def test_mark_processed(self, client):
        room_id = create_room(client)["id"]
        post_signal(client, room_id, "a")
        response = client.post(
            f"/api/rooms/{room_id}/messages/processed",
            json={"peerId": "b", "seqs": [1]},
        )
        assert response.status_code == 200
        assert response.json()["marked"] == 1

        messages = client.get(f"/api/rooms/{room_id}/messages").json()["messages"]
        assert messages[0]["processedBy"] == ["b"]

    def test_messages_unknown_room(self, client):
        assert client.get("/api/rooms/missing/messages").status_code == 404


class TestMiscEndpoints:

    def test_ice_servers(self, client):
        response = client.get("/api/ice-servers")
        assert response.status_code == 200
        assert isinstance(response.json()["ice_servers"], list)

    def test_debug(self, client):
        room_id = create_room(client)["id"]
        post_signal(client, room_id, "a")
        info = client.get("/api/debug").json()
        assert info["total_rooms"] == 1
        assert info["rooms"][room_id]["messages"] == 1


# ============================================================================
# HttpMailboxStore
# ============================================================================

@pytest_asyncio.fixture
async def http_store(app):
    http_client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")
    store = HttpMailboxStore("http://testserver", client=http_client)
    yield store
    await http_client.aclose()


class TestHttpMailboxStore:

    @pytest.mark.asyncio
    async def test_room_lifecycle(self, http_store):
        room_id = await http_store.create_room(Peer(id="a", name="Laptop"))
        peers = await http_store.append_peer(room_id, Peer(id="b"))
        assert [p.id for p in peers] == ["a", "b"]

        room = await http_store.read_room(room_id)
        assert room.creator_id == "a"
        assert room.has_peer("b")

    @pytest.mark.asyncio
    async def test_messages_round_trip(self, http_store):
        room_id = await http_store.create_room(Peer(id="a"))
        stored = await http_store.append_message(
            room_id,
            SignalMessage(type=SignalType.JOIN, sender="b", to=BROADCAST, from_name="Phone"),
        )
        assert stored.seq == 1
        assert stored.from_name == "Phone"

        await http_store.mark_processed(room_id, [1], "a")
        log = await http_store.read_messages(room_id)
        assert [(m.seq, m.sender, m.processed_by) for m in log] == [(1, "b", ["a"])]
        assert await http_store.read_messages(room_id, after=1) == []

    @pytest.mark.asyncio
    async def test_unknown_room_raises_room_not_found(self, http_store):
        with pytest.raises(RoomNotFound):
            await http_store.read_room("missing")
        with pytest.raises(RoomNotFound):
            await http_store.read_messages("missing")

    @pytest.mark.asyncio
    async def test_server_errors_raise_store_unavailable(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://mailbox")
        store = HttpMailboxStore("http://mailbox", client=http_client)
        with pytest.raises(StoreUnavailable):
            await store.read_messages("r1")
        await http_client.aclose()

    @pytest.mark.asyncio
    async def test_unreachable_mailbox_raises_store_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://mailbox")
        store = HttpMailboxStore("http://mailbox", client=http_client)
        with pytest.raises(StoreUnavailable):
            await store.append_message(
                "r1", SignalMessage(type=SignalType.LEAVE, sender="a", to=BROADCAST)
            )
        await http_client.aclose()

    @pytest.mark.asyncio
    async def test_close_leaves_borrowed_client_open(self, http_store):
        await http_store.close()
        assert not http_store._client.is_closed

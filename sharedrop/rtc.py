"""
WebRTC transport built on aiortc.

aiortc gathers ICE candidates before the local description is returned, so
offers and answers already carry them and on_candidate only fires for
transports that trickle. Remote trickled candidates from browsers are still
accepted through add_remote_candidate.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from .config import Settings, get_settings
from .errors import ChannelNotReady
from .transport import CLOSED, Transport, TransportFactory

logger = logging.getLogger(__name__)


def build_rtc_configuration(ice_servers: List[Dict[str, Any]]) -> RTCConfiguration:
    servers = []
    for s in ice_servers:
        servers.append(RTCIceServer(
            urls=s["urls"],
            username=s.get("username"),
            credential=s.get("credential")
        ))
    return RTCConfiguration(iceServers=servers)


def parse_candidate(candidate: Dict[str, Any]):
    """Convert a browser-style candidate dict to an aiortc RTCIceCandidate"""
    line = candidate["candidate"]
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    parsed = candidate_from_sdp(line)
    parsed.sdpMid = candidate.get("sdpMid")
    parsed.sdpMLineIndex = candidate.get("sdpMLineIndex")
    return parsed


class AiortcTransport(Transport):
    def __init__(
        self,
        peer_id: str,
        configuration: RTCConfiguration,
        label: str = "fileTransfer",
        buffered_amount_low_threshold: int = 65536,
    ):
        super().__init__(peer_id)
        self.label = label
        self.buffered_amount_low_threshold = buffered_amount_low_threshold
        self.pc = RTCPeerConnection(configuration=configuration)
        self.channel = None
        self._drained = asyncio.Event()
        self._drained.set()
        self._closed = False

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange():
            state = self.pc.connectionState
            logger.info(f"🔗 Connection to {self.peer_id}: {state}")
            self._emit_state(state)

        @self.pc.on("datachannel")
        def on_datachannel(channel):
            self._setup_channel(channel)
            if channel.readyState == "open":
                self._emit_channel_open()

    def _setup_channel(self, channel) -> None:
        self.channel = channel
        channel.bufferedAmountLowThreshold = self.buffered_amount_low_threshold

        @channel.on("open")
        def on_open():
            logger.info(f"✅ Data channel opened with peer: {self.peer_id}")
            self._emit_channel_open()

        @channel.on("message")
        def on_message(message):
            if isinstance(message, bytes):
                try:
                    message = message.decode("utf-8")
                except UnicodeDecodeError:
                    logger.warning(f"⚠️ Dropping {len(message)}-byte binary frame from {self.peer_id}: not UTF-8")
                    return
            self._emit_message(message)

        @channel.on("bufferedamountlow")
        def on_bufferedamountlow():
            self._drained.set()

        @channel.on("close")
        def on_close():
            self._drained.set()

    def _local_description(self) -> Dict[str, Any]:
        return {"type": self.pc.localDescription.type, "sdp": self.pc.localDescription.sdp}

    async def create_offer(self) -> Dict[str, Any]:
        # Transfers rely on in-order lossless delivery
        self._setup_channel(self.pc.createDataChannel(self.label, ordered=True))
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return self._local_description()

    async def create_answer(self, offer: Dict[str, Any]) -> Dict[str, Any]:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=offer["sdp"], type=offer["type"]))
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        return self._local_description()

    async def apply_answer(self, answer: Dict[str, Any]) -> None:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=answer["sdp"], type=answer["type"]))

    async def add_remote_candidate(self, candidate: Dict[str, Any]) -> None:
        await self.pc.addIceCandidate(parse_candidate(candidate))

    @property
    def has_remote_description(self) -> bool:
        return self.pc.remoteDescription is not None

    @property
    def channel_open(self) -> bool:
        return self.channel is not None and self.channel.readyState == "open"

    async def send(self, data: str) -> None:
        if not self.channel_open:
            raise ChannelNotReady(self.peer_id)
        self.channel.send(data)
        if self.channel.bufferedAmount > self.buffered_amount_low_threshold:
            self._drained.clear()
            await self._drained.wait()
            if not self.channel_open:
                raise ConnectionError(f"Data channel to {self.peer_id} closed while sending")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._drained.set()
        await self.pc.close()
        self._emit_state(CLOSED)


class AiortcTransportFactory(TransportFactory):
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.configuration = build_rtc_configuration(self.settings.ice_servers)

    def create(self, peer_id: str) -> AiortcTransport:
        return AiortcTransport(
            peer_id,
            self.configuration,
            label=self.settings.channel_label,
            buffered_amount_low_threshold=self.settings.buffered_amount_low_threshold,
        )

"""
Chunked file transfer over a negotiated data channel.

Wire protocol (JSON text messages):

    file-start {id, name, size, mimeType}
    file-chunk {id, seq, bytes}     bytes are base64, seq counts from 0
    file-end   {id}
    file-abort {id, reason}

The channel must be ordered and reliable. Chunks are appended in arrival
order; a sequence gap fails the transfer instead of producing a corrupt file.
"""

import asyncio
import logging
import mimetypes
import os
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

from pydantic import ValidationError

from .config import CHUNK_SIZE
from .errors import ChannelNotReady, TransferFailed
from .events import ShareDropEvents
from .models import (
    FileAbort,
    FileChunk,
    FileEnd,
    FileStart,
    FileTransfer,
    TransferDirection,
    TransferStatus,
    decode_control,
    encode_control,
    generate_id,
)
from .transport import Transport

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


class LocalFile:
    """A file to send, backed by a path on disk or by bytes in memory"""

    def __init__(
        self,
        name: str,
        size: int,
        mime_type: Optional[str] = None,
        data: Optional[bytes] = None,
        path: Optional[Path] = None,
    ):
        if data is None and path is None:
            raise ValueError("LocalFile needs either data or a path")
        self.name = name
        self.size = size
        self.mime_type = mime_type or mimetypes.guess_type(name)[0] or DEFAULT_MIME_TYPE
        self.data = data
        self.path = path

    @classmethod
    def from_path(cls, path: Union[str, os.PathLike], mime_type: Optional[str] = None) -> "LocalFile":
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        return cls(path.name, path.stat().st_size, mime_type, path=path)

    @classmethod
    def from_bytes(cls, name: str, data: bytes, mime_type: Optional[str] = None) -> "LocalFile":
        return cls(name, len(data), mime_type, data=bytes(data))

    def iter_chunks(self, chunk_size: int) -> Iterator[bytes]:
        if self.data is not None:
            for start in range(0, len(self.data), chunk_size):
                yield self.data[start:start + chunk_size]
            return
        with open(self.path, "rb") as f:
            while chunk := f.read(chunk_size):
                yield chunk

    def __repr__(self):
        return f"<LocalFile {self.name} {self.size}B {self.mime_type}>"


class _Incoming:
    def __init__(self, transfer: FileTransfer):
        self.transfer = transfer
        self.chunks: List[bytes] = []
        self.next_seq = 0


class TransferEngine:
    def __init__(
        self,
        transport_for: Callable[[str], Optional[Transport]],
        events: Optional[ShareDropEvents] = None,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.events = events or ShareDropEvents()
        self.chunk_size = chunk_size
        self.transfers: Dict[str, FileTransfer] = {}
        self._transport_for = transport_for
        self._tasks: Dict[str, asyncio.Task] = {}
        self._incoming: Dict[Tuple[str, str], _Incoming] = {}
        self._background: set = set()

    # ---- send path ----

    def send_file(self, file: LocalFile, peer_id: str) -> str:
        """Start sending ``file`` to ``peer_id`` and return the transfer id.

        Raises ChannelNotReady right away when the peer has no open channel.
        Must be called from a running event loop.
        """
        transport = self._transport_for(peer_id)
        if transport is None or not transport.channel_open:
            raise ChannelNotReady(peer_id)

        transfer = FileTransfer(
            id=generate_id(),
            peer_id=peer_id,
            name=file.name,
            size=file.size,
            mime_type=file.mime_type,
            direction=TransferDirection.SEND,
        )
        self.transfers[transfer.id] = transfer

        task = asyncio.get_running_loop().create_task(self._send(transfer, file, transport))
        self._tasks[transfer.id] = task
        task.add_done_callback(lambda t: self._tasks.pop(transfer.id, None))
        logger.info(f"📁 Sending {file.name} ({transfer.formatted_size}) to {peer_id} as {transfer.id}")
        return transfer.id

    async def _send(self, transfer: FileTransfer, file: LocalFile, transport: Transport) -> None:
        transfer.status = TransferStatus.TRANSFERRING
        try:
            await transport.send(encode_control(FileStart(
                id=transfer.id,
                name=transfer.name,
                size=transfer.size,
                mime_type=transfer.mime_type,
            )))
            # One chunk at a time so the channel's send buffer stays bounded
            for seq, chunk in enumerate(file.iter_chunks(self.chunk_size)):
                if transfer.bytes_transferred + len(chunk) > transfer.size:
                    raise TransferFailed(transfer.id, f"file grew past the announced {transfer.size} bytes")
                await transport.send(encode_control(FileChunk(id=transfer.id, seq=seq, data=chunk)))
                transfer.bytes_transferred += len(chunk)
                self.events.transfer_progress.emit(transfer.id, transfer.progress)
            if transfer.bytes_transferred != transfer.size:
                raise TransferFailed(
                    transfer.id,
                    f"file shrank to {transfer.bytes_transferred} of the announced {transfer.size} bytes",
                )
            await transport.send(encode_control(FileEnd(id=transfer.id)))
        except asyncio.CancelledError:
            self._mark_failed(transfer, "cancelled")
            raise
        except TransferFailed as e:
            # The receiver would otherwise assemble a file of the wrong size
            self._mark_failed(transfer, e.reason)
            await self._send_abort(transport, transfer.id, e.reason)
            return
        except Exception as e:
            self._mark_failed(transfer, f"send failed after {transfer.bytes_transferred} bytes: {e}")
            return

        if transfer.size == 0:
            self.events.transfer_progress.emit(transfer.id, transfer.progress)
        transfer.status = TransferStatus.COMPLETED
        logger.info(f"✅ Sent {transfer.name} to {transfer.peer_id}")
        self.events.transfer_complete.emit(transfer)

    async def wait(self, transfer_id: str) -> FileTransfer:
        """Wait for an outbound transfer to finish and return it"""
        task = self._tasks.get(transfer_id)
        if task is not None:
            await asyncio.wait({task})
        return self.transfers[transfer_id]

    # ---- receive path ----

    def handle_message(self, peer_id: str, raw: Union[str, bytes]) -> None:
        try:
            message = decode_control(raw)
        except ValidationError as e:
            logger.warning(f"🚫 Dropping malformed channel message from {peer_id}: {e.error_count()} errors")
            return

        if isinstance(message, FileStart):
            self._on_start(peer_id, message)
        elif isinstance(message, FileChunk):
            self._on_chunk(peer_id, message)
        elif isinstance(message, FileEnd):
            self._on_end(peer_id, message)
        elif isinstance(message, FileAbort):
            self._on_abort(peer_id, message)

    def _on_start(self, peer_id: str, message: FileStart) -> None:
        if message.id in self.transfers:
            logger.warning(f"⚠️ Ignoring file-start for known transfer id {message.id}")
            return
        transfer = FileTransfer(
            id=message.id,
            peer_id=peer_id,
            name=message.name,
            size=message.size,
            mime_type=message.mime_type,
            direction=TransferDirection.RECEIVE,
            status=TransferStatus.TRANSFERRING,
        )
        self.transfers[transfer.id] = transfer
        self._incoming[(peer_id, transfer.id)] = _Incoming(transfer)
        logger.info(f"📁 Receiving {transfer.name} ({transfer.formatted_size}) from {peer_id}")
        self.events.file_incoming.emit(transfer)

    def _on_chunk(self, peer_id: str, message: FileChunk) -> None:
        key = (peer_id, message.id)
        incoming = self._incoming.get(key)
        if incoming is None:
            logger.warning(f"⚠️ Chunk for unknown transfer {message.id} from {peer_id}")
            return
        transfer = incoming.transfer

        if message.seq != incoming.next_seq:
            self._fail_incoming(key, f"expected chunk {incoming.next_seq}, got {message.seq}")
            return
        if transfer.bytes_transferred + len(message.data) > transfer.size:
            self._fail_incoming(key, f"received more than the declared {transfer.size} bytes")
            return

        incoming.chunks.append(message.data)
        incoming.next_seq += 1
        transfer.bytes_transferred += len(message.data)
        self.events.transfer_progress.emit(transfer.id, transfer.progress)

    def _on_end(self, peer_id: str, message: FileEnd) -> None:
        key = (peer_id, message.id)
        incoming = self._incoming.get(key)
        if incoming is None:
            logger.warning(f"⚠️ file-end for unknown transfer {message.id} from {peer_id}")
            return
        transfer = incoming.transfer

        data = b"".join(incoming.chunks)
        if len(data) != transfer.size:
            self._fail_incoming(key, f"assembled {len(data)} bytes, expected {transfer.size}")
            return
        del self._incoming[key]

        if transfer.size == 0:
            self.events.transfer_progress.emit(transfer.id, transfer.progress)
        transfer.status = TransferStatus.COMPLETED
        logger.info(f"✅ Received {transfer.name} from {peer_id}")
        self.events.file_received.emit(transfer, data)
        self.events.transfer_complete.emit(transfer)

    def _on_abort(self, peer_id: str, message: FileAbort) -> None:
        reason = f"aborted by peer: {message.reason or 'no reason given'}"
        key = (peer_id, message.id)
        if key in self._incoming:
            self._fail_incoming(key, reason)
            return
        transfer = self.transfers.get(message.id)
        if transfer is not None and transfer.peer_id == peer_id and transfer.direction is TransferDirection.SEND:
            self._cancel_send(transfer, reason)

    # ---- failure and cancellation ----

    def _mark_failed(self, transfer: FileTransfer, reason: str) -> None:
        if transfer.status.is_terminal:
            return
        transfer.status = TransferStatus.FAILED
        transfer.error = reason
        logger.error(f"❌ {TransferFailed(transfer.id, reason)}")
        self.events.transfer_failed.emit(transfer, reason)

    def _fail_incoming(self, key: Tuple[str, str], reason: str) -> None:
        incoming = self._incoming.pop(key)
        # Partial data is discarded with the buffer
        incoming.chunks.clear()
        self._mark_failed(incoming.transfer, reason)

    def _cancel_send(self, transfer: FileTransfer, reason: str) -> None:
        self._mark_failed(transfer, reason)
        task = self._tasks.get(transfer.id)
        if task is not None:
            task.cancel()

    def cancel_transfer(self, transfer_id: str, reason: str = "cancelled") -> bool:
        """Cancel an in-flight transfer and tell the peer. Returns False if nothing was cancelled."""
        transfer = self.transfers.get(transfer_id)
        if transfer is None or transfer.status.is_terminal:
            return False

        if transfer.direction is TransferDirection.SEND:
            self._cancel_send(transfer, reason)
        else:
            self._fail_incoming((transfer.peer_id, transfer.id), reason)

        transport = self._transport_for(transfer.peer_id)
        if transport is not None and transport.channel_open:
            task = asyncio.get_running_loop().create_task(
                self._send_abort(transport, transfer.id, reason)
            )
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return True

    async def _send_abort(self, transport: Transport, transfer_id: str, reason: str) -> None:
        try:
            await transport.send(encode_control(FileAbort(id=transfer_id, reason=reason)))
        except Exception as e:
            logger.warning(f"⚠️ Could not notify peer about aborted transfer {transfer_id}: {e}")

    def abort_peer(self, peer_id: str) -> None:
        """Fail every in-flight transfer with ``peer_id``; its session is gone"""
        for transfer in list(self.transfers.values()):
            if transfer.peer_id != peer_id or transfer.status.is_terminal:
                continue
            if transfer.direction is TransferDirection.SEND:
                self._cancel_send(transfer, "peer disconnected")
            elif (peer_id, transfer.id) in self._incoming:
                self._fail_incoming((peer_id, transfer.id), "peer disconnected")

    def get_transfer(self, transfer_id: str) -> Optional[FileTransfer]:
        return self.transfers.get(transfer_id)

    def forget_finished(self) -> List[FileTransfer]:
        """Drop completed and failed transfers from the table and return them"""
        finished = [t for t in self.transfers.values() if t.status.is_terminal and t.id not in self._tasks]
        for transfer in finished:
            del self.transfers[transfer.id]
        return finished

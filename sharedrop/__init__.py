"""
ShareDrop - peer-to-peer file sharing through a shared room

- Room mailbox for exchanging connection-setup messages
- Per-peer WebRTC session negotiation
- Chunked file transfer with progress tracking
"""

from .client import ShareDropClient
from .errors import (
    ChannelNotReady,
    NegotiationFailed,
    RoomNotFound,
    ShareDropError,
    StoreUnavailable,
    TransferFailed,
    TransportUnavailable,
)
from .models import FileTransfer, Peer, TransferDirection, TransferStatus
from .transfer import LocalFile

__all__ = [
    "ShareDropClient",
    "LocalFile",
    "FileTransfer",
    "Peer",
    "TransferDirection",
    "TransferStatus",
    "ShareDropError",
    "StoreUnavailable",
    "TransportUnavailable",
    "RoomNotFound",
    "NegotiationFailed",
    "ChannelNotReady",
    "TransferFailed",
]

__version__ = "1.0.0"

class ShareDropError(Exception):
    """Base class for sharedrop errors"""


class StoreUnavailable(ShareDropError):
    """Mailbox read or write failed; retried on the next poll"""


# Name used by the mailbox contract for the same condition
TransportUnavailable = StoreUnavailable


class RoomNotFound(ShareDropError):
    def __init__(self, room_id: str):
        super().__init__(f"Room {room_id} not found")
        self.room_id = room_id


class NegotiationFailed(ShareDropError):
    """Malformed or out-of-sequence offer/answer for one peer"""

    def __init__(self, peer_id: str, reason: str):
        super().__init__(f"Negotiation with {peer_id} failed: {reason}")
        self.peer_id = peer_id
        self.reason = reason


class ChannelNotReady(ShareDropError):
    """Send attempted before the data channel to a peer is open"""

    def __init__(self, peer_id: str):
        super().__init__(f"Peer {peer_id} not connected or data channel not ready")
        self.peer_id = peer_id


class TransferFailed(ShareDropError):
    def __init__(self, transfer_id: str, reason: str):
        super().__init__(f"Transfer {transfer_id} failed: {reason}")
        self.transfer_id = transfer_id
        self.reason = reason

"""
Per-connection state tracking for local diagnostics.
"""
import _ssl
import logging
import ssl
import time
from enum import Enum
from typing import List, Optional, Tuple

from .models import PeerIdentity, RejectReason


class ConnectionState(Enum):
    IDLE = "Idle"
    HANDSHAKING = "Handshaking"
    VALIDATING = "Validating"
    AUTHENTICATED = "Authenticated"
    REJECTED = "Rejected"
    CLOSED = "Closed"


_TRANSITIONS = {
    ConnectionState.IDLE: {ConnectionState.HANDSHAKING, ConnectionState.CLOSED},
    # A handshake can also be refused by the TLS layer itself, or fail at the network level
    ConnectionState.HANDSHAKING: {ConnectionState.VALIDATING, ConnectionState.REJECTED, ConnectionState.CLOSED},
    ConnectionState.VALIDATING: {ConnectionState.AUTHENTICATED, ConnectionState.REJECTED},
    ConnectionState.AUTHENTICATED: {ConnectionState.CLOSED},
    ConnectionState.REJECTED: {ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),
}


class ConnectionSession:
    """
    State of one connection: Idle, Handshaking, Validating, then Authenticated or Rejected, then Closed.

    Sessions are never shared between connections; nothing learned on one
    connection affects another.
    """

    def __init__(self, role: str, peer_address: Optional[str] = None):
        self.role = role
        self.peer_address = peer_address
        self.state = ConnectionState.IDLE
        self.peer: Optional[PeerIdentity] = None
        self.reject_reason: Optional[RejectReason] = None
        self.history: List[Tuple[ConnectionState, float]] = [(ConnectionState.IDLE, time.monotonic())]
        self.logger = logging.getLogger(__name__)

    def advance(self, new_state: ConnectionState) -> None:
        """Move to a new state, refusing transitions the state machine does not allow."""
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal {self.role} connection transition: {self.state.value} -> {new_state.value}")
        self.logger.debug(f"{self.role} connection {self.peer_address or ''}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append((new_state, time.monotonic()))

    def authenticate(self, peer: PeerIdentity) -> None:
        self.peer = peer
        self.advance(ConnectionState.AUTHENTICATED)

    def reject(self, reason: RejectReason, peer: Optional[PeerIdentity] = None) -> None:
        self.peer = peer
        self.reject_reason = reason
        self.advance(ConnectionState.REJECTED)

    def close(self) -> None:
        if self.state is not ConnectionState.CLOSED:
            self.advance(ConnectionState.CLOSED)

    @property
    def was_rejected(self) -> bool:
        return any(state is ConnectionState.REJECTED for state, _ in self.history)

    @property
    def handshake_completed(self) -> bool:
        return any(state is ConnectionState.VALIDATING for state, _ in self.history)

    @property
    def elapsed_ms(self) -> float:
        return (self.history[-1][1] - self.history[0][1]) * 1000


def _unverified_chain(tls_sock: ssl.SSLSocket) -> List[bytes]:
    """Every certificate the peer sent, as DER, in the order it sent them."""
    if hasattr(tls_sock, 'get_unverified_chain'):
        return tls_sock.get_unverified_chain() or []
    # Python 3.10 to 3.12 only expose the sent chain on the underlying _ssl object
    certificates = tls_sock._sslobj.get_unverified_chain() or []
    return [cert.public_bytes(_ssl.ENCODING_DER) for cert in certificates]


def peer_chain(tls_sock: ssl.SSLSocket) -> List[bytes]:
    """DER certificates sent by the peer, leaf first."""
    leaf = tls_sock.getpeercert(binary_form=True)
    if not leaf:
        return []
    chain = [leaf]
    chain.extend(der for der in _unverified_chain(tls_sock) if der != leaf)
    return chain

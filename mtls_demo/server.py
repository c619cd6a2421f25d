"""
Threaded HTTPS server that requires and validates client certificates.

The listening socket stays plain TCP; each accepted connection performs its
TLS handshake and certificate validation on its own worker thread, so a slow
or stalled peer never blocks the accept loop. A rejected peer is disconnected
before any HTTP data is read or written.
"""
import logging
import ssl
import threading
from typing import Optional

from werkzeug.serving import ThreadedWSGIServer, WSGIRequestHandler

from .app import SecureFlaskApp
from .security import SecurityService
from .security.auth_middleware import PEER_ENVIRON_KEY
from .security.errors import reason_for_verify_code
from .security.models import RejectReason
from .security.session import ConnectionSession, ConnectionState, peer_chain
from .services.logging_service import RejectionTracker

logger = logging.getLogger(__name__)


class MTLSRequestHandler(WSGIRequestHandler):
    """Request handler that exposes the connection's validated peer identity to the WSGI app."""

    def __init__(self, request, client_address, server, session: Optional[ConnectionSession] = None):
        self.session = session
        super().__init__(request, client_address, server)

    def make_environ(self):
        environ = super().make_environ()
        if self.session is not None and self.session.state is ConnectionState.AUTHENTICATED:
            environ[PEER_ENVIRON_KEY] = self.session.peer
        return environ


class MTLSWSGIServer(ThreadedWSGIServer):
    """werkzeug threaded server with a per-connection mTLS handshake and validation step."""

    def __init__(self, host: str, port: int, app, security_service: SecurityService,
                 rejection_tracker: RejectionTracker, handshake_timeout: float = 10):
        super().__init__(host, port, app, handler=MTLSRequestHandler)
        self.security_service = security_service
        self.rejection_tracker = rejection_tracker
        self.handshake_timeout = handshake_timeout
        # TLS is negotiated per connection in finish_request, not on the listening socket
        self.ssl_context = security_service.create_server_context()

    def finish_request(self, request, client_address):
        """Handshake, validate, and only then hand the connection to the WSGI handler."""
        peer_address = f"{client_address[0]}:{client_address[1]}"
        session = ConnectionSession("server", peer_address)
        session.advance(ConnectionState.HANDSHAKING)

        tls_sock = self._handshake(request, session)
        if tls_sock is None:
            session.close()
            return

        try:
            session.advance(ConnectionState.VALIDATING)
            verdict = self.security_service.validate_peer_chain(peer_chain(tls_sock))
            if not verdict.accepted:
                session.reject(verdict.reason, verdict.peer)
                self.rejection_tracker.record(
                    verdict.reason,
                    subject=verdict.peer.subject if verdict.peer else None,
                    peer_address=peer_address,
                    detail=verdict.detail
                )
                return

            session.authenticate(verdict.peer)
            logger.info(f"Client {verdict.peer.client_id} authenticated from {peer_address}")
            self.RequestHandlerClass(tls_sock, client_address, self, session=session)
        finally:
            self.shutdown_request(tls_sock)
            session.close()
            logger.debug(f"Connection from {peer_address} closed after {session.elapsed_ms:.1f} ms")

    def _handshake(self, request, session: ConnectionSession) -> Optional[ssl.SSLSocket]:
        """Run the TLS handshake with a bounded duration; None if it failed."""
        request.settimeout(self.handshake_timeout)
        try:
            return self.ssl_context.wrap_socket(request, server_side=True)
        except ssl.SSLCertVerificationError as e:
            # ssl offers no hook to read a certificate OpenSSL refused, so the claimed subject is unavailable here
            reason = reason_for_verify_code(e.verify_code)
            session.reject(reason)
            self.rejection_tracker.record(reason, peer_address=session.peer_address, detail=e.verify_message)
        except ssl.SSLError as e:
            if e.reason == 'PEER_DID_NOT_RETURN_A_CERTIFICATE':
                session.reject(RejectReason.UNTRUSTED_CHAIN)
                self.rejection_tracker.record(
                    RejectReason.UNTRUSTED_CHAIN,
                    peer_address=session.peer_address,
                    detail="peer presented no certificate"
                )
            else:
                logger.info(f"TLS handshake with {session.peer_address} failed: {e}")
        except OSError as e:
            logger.info(f"Connection from {session.peer_address} dropped during handshake: {e}")
        return None


class MTLSServer:
    """The TLS server role: owns the WSGI server and its lifecycle."""

    def __init__(self, config, security_service: SecurityService,
                 rejection_tracker: Optional[RejectionTracker] = None):
        """
        Initialize the server role.

        Args:
            config: ServerConfig with listen address and handshake timeout
            security_service: Loaded server identity, trust anchors and client policy
            rejection_tracker: Where rejected peers are recorded
        """
        self.config = config
        self.security_service = security_service
        self.rejection_tracker = rejection_tracker or RejectionTracker()
        self.flask_app = SecureFlaskApp(security_service, self.rejection_tracker)
        self._server: Optional[MTLSWSGIServer] = None
        self._thread: Optional[threading.Thread] = None
        self._serving = threading.Event()
        self.logger = logging.getLogger(__name__)

    def bind(self, host: Optional[str] = None, port: Optional[int] = None) -> MTLSWSGIServer:
        """Create the listening socket. Port 0 binds an ephemeral port."""
        host = host if host is not None else self.config.host
        port = port if port is not None else self.config.port
        self._server = MTLSWSGIServer(
            host,
            port,
            self.flask_app.get_app(),
            self.security_service,
            self.rejection_tracker,
            handshake_timeout=self.config.handshake_timeout_seconds
        )
        self.logger.info(f"Listening for mTLS connections on https://{host}:{self.port}")
        return self._server

    @property
    def port(self) -> int:
        if self._server is None:
            raise RuntimeError("Server is not bound")
        return self._server.server_address[1]

    def serve_forever(self):
        """Serve until shutdown() is called from another thread or a signal handler."""
        if self._server is None:
            self.bind()
        self._serving.set()
        self._server.serve_forever()

    def start_background(self) -> threading.Thread:
        """Serve on a daemon thread."""
        if self._server is None:
            self.bind()
        self._serving.set()
        self._thread = threading.Thread(target=self._server.serve_forever, name="mtls-server", daemon=True)
        self._thread.start()
        return self._thread

    def shutdown(self):
        """
        Stop accepting connections and close the listening socket.

        Must not be called from the thread running serve_forever().
        """
        if self._server is None:
            return
        self.logger.info("Shutting down mTLS server...")
        # socketserver's shutdown() waits for a serve loop, which never started if this is unset
        if self._serving.is_set():
            self._server.shutdown()
            self._serving.clear()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None

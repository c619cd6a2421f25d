"""
mTLS client: presents the client certificate, validates the server and sends one request.
"""
import logging
import ssl
import time
from typing import Callable, Optional, Type

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.util.ssl_ import is_ipaddress

from .security import SecurityService
from .security.errors import (
    CertificateValidationError, MTLSError, NetworkError, PeerRejectedError, ServerUnreachable,
    error_for_reason, error_for_verdict, reason_for_verify_code
)
from .security.models import ExchangeResult
from .security.session import ConnectionSession, ConnectionState, peer_chain

USER_AGENT = "mtls-demo-client/1.0"


def _find_cause(exc: BaseException, exc_type: Type[BaseException]) -> Optional[BaseException]:
    """Search an exception, its causes and wrapped arguments for an instance of exc_type."""
    seen = set()
    stack = [exc]
    while stack:
        current = stack.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, exc_type):
            return current
        linked = [current.__cause__, current.__context__, getattr(current, 'reason', None)]
        linked.extend(current.args)
        stack.extend(e for e in linked if isinstance(e, BaseException))
    return None


def _validating_pool_class(on_connected: Callable[[ssl.SSLSocket], None],
                           on_connecting: Callable[[], None]) -> Type[HTTPSConnectionPool]:
    """Build an HTTPS pool whose connections run a hook between the handshake and the first request byte."""

    class ValidatingHTTPSConnection(HTTPSConnection):
        def connect(self):
            on_connecting()
            super().connect()
            try:
                on_connected(self.sock)
            except CertificateValidationError:
                self.close()
                raise

    class ValidatingHTTPSConnectionPool(HTTPSConnectionPool):
        ConnectionCls = ValidatingHTTPSConnection

    return ValidatingHTTPSConnectionPool


class MTLSAdapter(HTTPAdapter):
    """Transport adapter that uses our SSL context and validates the server on every new connection."""

    def __init__(self, ssl_context: ssl.SSLContext, server_hostname: str,
                 on_connected: Callable[[ssl.SSLSocket], None],
                 on_connecting: Callable[[], None], **kwargs):
        self.ssl_context = ssl_context
        self.server_hostname = server_hostname
        self.on_connected = on_connected
        self.on_connecting = on_connecting
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        pool_kwargs['ssl_context'] = self.ssl_context
        # SNI and hostname verification use the expected name even when connecting by address
        pool_kwargs['server_hostname'] = self.server_hostname
        if not self.ssl_context.check_hostname:
            # Address identities are matched by HostnamePolicy in on_connected
            pool_kwargs['assert_hostname'] = False
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            'http': HTTPConnectionPool,
            'https': _validating_pool_class(self.on_connected, self.on_connecting),
        }


class MTLSClient:
    """The TLS client role: one authenticated request per fetch()."""

    def __init__(self, config, security_service: SecurityService):
        """
        Initialize the client role.

        Args:
            config: ClientConfig with server address, expected hostname and timeout
            security_service: Loaded client identity, trust anchors and hostname policy
        """
        self.config = config
        self.security_service = security_service
        self.ssl_context = security_service.create_client_context()
        if is_ipaddress(config.expected_hostname):
            # urllib3 sends no SNI name for addresses, which ssl refuses while check_hostname is set
            self.ssl_context.check_hostname = False
        self.logger = logging.getLogger(__name__)
        self._session: Optional[ConnectionSession] = None

    def _create_session(self) -> requests.Session:
        """Create a requests session whose HTTPS transport is our mTLS adapter."""
        session = requests.Session()

        adapter = MTLSAdapter(
            self.ssl_context,
            self.config.expected_hostname,
            on_connected=self._on_connected,
            on_connecting=self._on_connecting,
            max_retries=0
        )
        session.mount("https://", adapter)

        # Only our trust anchor, never the default CA bundle
        session.verify = self.config.trust_anchor_path
        session.trust_env = False
        session.headers.update({
            'User-Agent': USER_AGENT,
            'Accept': 'text/plain',
        })

        return session

    def _on_connecting(self) -> None:
        self._session.advance(ConnectionState.HANDSHAKING)

    def _on_connected(self, sock: ssl.SSLSocket) -> None:
        """Validate the server certificate after the handshake, before any request data is sent."""
        self._session.advance(ConnectionState.VALIDATING)
        verdict = self.security_service.validate_peer_chain(peer_chain(sock))
        if not verdict.accepted:
            self._session.reject(verdict.reason, verdict.peer)
            self.logger.error(f"Server identity invalid: {verdict.describe()}")
            raise error_for_verdict(verdict)

        self._session.authenticate(verdict.peer)
        self.logger.info(f"Server {verdict.peer.subject} authenticated")

    def fetch(self) -> ExchangeResult:
        """
        Send exactly one GET request to the configured server.

        Returns:
            ExchangeResult with the response body, or one of ServerUnreachable,
            a CertificateValidationError subclass, or PeerRejectedError
        """
        url = self.config.server_url
        session = ConnectionSession("client", f"{self.config.server_host}:{self.config.server_port}")
        self._session = session
        start_time = time.monotonic()

        def elapsed() -> float:
            return (time.monotonic() - start_time) * 1000

        self.logger.info(f"Requesting {url} (expecting server {self.config.expected_hostname})")
        try:
            with self._create_session() as http:
                response = http.get(
                    url,
                    timeout=self.config.request_timeout_seconds,
                    allow_redirects=False
                )
        except CertificateValidationError as e:
            return ExchangeResult.failure(e, elapsed_ms=elapsed())
        except requests.exceptions.RequestException as e:
            error = self._classify_failure(e, session)
            self.logger.error(f"Request failed: {error}")
            return ExchangeResult.failure(error, elapsed_ms=elapsed())
        finally:
            session.close()

        if response.status_code in (401, 403):
            return ExchangeResult.failure(
                PeerRejectedError(f"server refused the request with HTTP {response.status_code}"),
                status_code=response.status_code,
                elapsed_ms=elapsed()
            )
        if not response.ok:
            return ExchangeResult.failure(
                NetworkError(f"unexpected HTTP status {response.status_code}"),
                status_code=response.status_code,
                elapsed_ms=elapsed()
            )

        response.encoding = response.encoding or 'utf-8'
        return ExchangeResult.success(response.status_code, response.text, peer=session.peer, elapsed_ms=elapsed())

    def _classify_failure(self, exc: requests.exceptions.RequestException,
                          session: ConnectionSession) -> MTLSError:
        """Turn a transport exception into server-identity, peer-rejected or unreachable errors."""
        verify_error = _find_cause(exc, ssl.SSLCertVerificationError)
        if verify_error is not None:
            reason = reason_for_verify_code(verify_error.verify_code)
            if session.state is ConnectionState.HANDSHAKING:
                session.reject(reason)
            return error_for_reason(reason, verify_error.verify_message or str(verify_error))

        # A server that stops answering is unreachable, whether or not it was authenticated
        if isinstance(exc, requests.exceptions.Timeout):
            return ServerUnreachable(f"timed out after {self.config.request_timeout_seconds}s")

        ssl_error = _find_cause(exc, ssl.SSLError)
        alert = ssl_error is not None and 'ALERT' in (getattr(ssl_error, 'reason', None) or '')
        # The server validates our certificate after its side of the handshake; a drop
        # after we authenticated the server, or a TLS alert, means it refused us
        if alert or session.state is ConnectionState.AUTHENTICATED:
            return PeerRejectedError(f"server rejected our certificate ({exc})")

        return ServerUnreachable(f"could not reach {self.config.server_host}:{self.config.server_port} ({exc})")

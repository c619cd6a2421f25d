"""
Authentication middleware for mTLS client certificate validation.

Connections served by MTLSServer arrive already validated, with the peer
identity in the WSGI environment. Under any other WSGI server the middleware
validates the certificate the server forwarded in SSL_CLIENT_CERT.
"""
import logging
from functools import wraps
from typing import Optional

from flask import Response, g, request

from .security_service import SecurityService

PEER_ENVIRON_KEY = 'mtls.peer'

FORBIDDEN_BODY = 'Forbidden\n'


def _forbidden() -> Response:
    # Rejection details stay in the server log
    return Response(FORBIDDEN_BODY, status=403, mimetype='text/plain')


class MTLSAuthMiddleware:
    """Middleware for mTLS client certificate authentication."""

    def __init__(self, app, security_service: SecurityService, rejection_tracker=None):
        """Initialize the authentication middleware."""
        self.app = app
        self.security_service = security_service
        self.rejection_tracker = rejection_tracker
        self.logger = logging.getLogger(__name__)

        # Wrap the Flask app
        self.wsgi_app = app.wsgi_app
        app.wsgi_app = self

    def __call__(self, environ, start_response):
        """WSGI application call."""
        environ['mtls.authenticated'] = False
        environ['mtls.client_id'] = None

        peer = environ.get(PEER_ENVIRON_KEY)
        if peer is not None:
            # Validated during the handshake by MTLSServer
            environ['mtls.authenticated'] = True
            environ['mtls.client_id'] = peer.client_id
            return self.wsgi_app(environ, start_response)

        client_cert_pem = self._extract_client_certificate(environ)
        if client_cert_pem:
            verdict = self.security_service.validate_client_certificate(client_cert_pem)
            if verdict.accepted:
                environ[PEER_ENVIRON_KEY] = verdict.peer
                environ['mtls.authenticated'] = True
                environ['mtls.client_id'] = verdict.peer.client_id
                self.logger.info(f"Client authenticated: {verdict.peer.client_id}")
            elif self.rejection_tracker is not None:
                self.rejection_tracker.record(
                    verdict.reason,
                    subject=verdict.peer.subject if verdict.peer else None,
                    peer_address=environ.get('REMOTE_ADDR'),
                    detail=verdict.detail
                )
            else:
                self.logger.warning(f"Client authentication failed: {verdict.describe()}")

        return self.wsgi_app(environ, start_response)

    def _extract_client_certificate(self, environ) -> Optional[str]:
        """Extract the client certificate the WSGI server took from the TLS connection."""
        # Proxy-supplied headers (X-SSL-CERT and friends) are not trusted here
        return environ.get('SSL_CLIENT_CERT') or None


def setup_mtls_authentication(app, security_service: SecurityService, rejection_tracker=None):
    """Set up mTLS authentication for Flask app."""

    # Add the middleware
    MTLSAuthMiddleware(app, security_service, rejection_tracker)

    @app.before_request
    def authenticate_request():
        """Authenticate the request using the validated client certificate."""
        if not request.environ.get('mtls.authenticated', False):
            return _forbidden()

        # Store authentication info in Flask's g object
        g.client_id = request.environ.get('mtls.client_id')
        g.peer = request.environ.get(PEER_ENVIRON_KEY)
        g.authenticated = True

    return app


def require_authentication(f):
    """Decorator to require authentication for specific endpoints."""

    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not getattr(g, 'authenticated', False):
            return _forbidden()
        return f(*args, **kwargs)
    return decorated_function

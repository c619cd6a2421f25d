"""
Flask application serving the authenticated greeting.
"""
from flask import Flask, Response, g
import logging
from typing import Optional

from .security import SecurityService
from .security.auth_middleware import setup_mtls_authentication, require_authentication
from .services.logging_service import RejectionTracker

GREETING = "🎉 Hello, authenticated client!"


class SecureFlaskApp:
    """Flask application with mTLS authentication."""

    def __init__(self, security_service: SecurityService,
                 rejection_tracker: Optional[RejectionTracker] = None):
        """Initialize the secure Flask application."""
        self.app = Flask(__name__)
        self.security_service = security_service
        self.rejection_tracker = rejection_tracker
        self.logger = logging.getLogger(__name__)

        # Set up mTLS authentication
        setup_mtls_authentication(self.app, self.security_service, self.rejection_tracker)

        # Set up routes
        self._setup_routes()
        self._setup_error_handlers()
        self._setup_security_headers()

    def _setup_routes(self):
        """Set up the greeting route."""

        @self.app.route('/', methods=['GET'])
        @require_authentication
        def greeting():
            """Return the fixed greeting to an authenticated client."""
            self.logger.info(f"Greeting served to {g.client_id}")
            return Response(GREETING, mimetype='text/plain')

    def _setup_error_handlers(self):
        """Plain-text error responses that reveal nothing about the server."""

        @self.app.errorhandler(404)
        def not_found(error):
            return Response('Not Found\n', status=404, mimetype='text/plain')

        @self.app.errorhandler(405)
        def method_not_allowed(error):
            return Response('Method Not Allowed\n', status=405, mimetype='text/plain')

        @self.app.errorhandler(500)
        def internal_error(error):
            self.logger.error(f"Internal server error: {error}")
            return Response('Internal Server Error\n', status=500, mimetype='text/plain')

    def _setup_security_headers(self):
        """Set up security headers."""

        @self.app.after_request
        def add_security_headers(response):
            # HSTS header for HTTPS
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'

            # Other security headers
            response.headers['X-Content-Type-Options'] = 'nosniff'
            response.headers['X-Frame-Options'] = 'DENY'
            response.headers['Cache-Control'] = 'no-store'

            return response

    def get_app(self) -> Flask:
        """Get the Flask application instance."""
        return self.app

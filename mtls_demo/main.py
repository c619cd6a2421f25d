"""
Main entry point for the mTLS demo.
Loads configuration and credentials, then runs the server or client role.
"""

import sys
import signal
import logging
import threading
from typing import List, Optional
from datetime import datetime

from .client import MTLSClient
from .security import CredentialLoadError, SecurityService
from .security.errors import CertificateValidationError, PeerRejectedError, ServerUnreachable
from .server import MTLSServer
from .services.config_service import ConfigService
from .services.logging_service import LoggingService

DEFAULT_CONFIG_PATHS = {
    "server": "config/server.properties",
    "client": "config/client.properties",
}


def describe_error(error: Exception) -> str:
    """One-line, user-facing description of a failed exchange."""
    if isinstance(error, ServerUnreachable):
        return f"Could not reach server: {error}"
    if isinstance(error, CertificateValidationError):
        return f"Server identity invalid ({error.reason}): {error}"
    if isinstance(error, PeerRejectedError):
        return f"Server rejected our certificate: {error}"
    return f"Request failed: {error}"


class MTLSApplication:
    """Wires configuration, logging and credentials into a server or client role."""

    def __init__(self, role: str, config_path: Optional[str] = None):
        """
        Initialize the application.

        Args:
            role: "server" or "client"
            config_path: Path to configuration file (optional)
        """
        if role not in DEFAULT_CONFIG_PATHS:
            raise ValueError(f"Unknown role: {role}")
        self.role = role
        self.config_path = config_path or DEFAULT_CONFIG_PATHS[role]
        self.logger = logging.getLogger(__name__)
        self.config_service = ConfigService()
        self.config = None
        self.logging_service = None
        self.security_service = None
        self.server = None
        self._started_at = datetime.now()

    def initialize(self) -> bool:
        """
        Load configuration and credentials.

        Returns:
            True if initialization successful, False otherwise
        """
        try:
            if self.role == "server":
                self.config = self.config_service.load_server_config(self.config_path)
            else:
                self.config = self.config_service.load_client_config(self.config_path)
        except FileNotFoundError as e:
            print(f"Error: {e}", file=sys.stderr)
            print(f"Create one with: mtls-demo {self.role} --init-config --config {self.config_path}",
                  file=sys.stderr)
            return False
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return False

        # Initialize logging first, everything below reports through it
        self.logging_service = LoggingService(self.config)
        self.logger.info(f"Starting mTLS demo {self.role} with configuration {self.config_path}")

        try:
            if self.role == "server":
                self.security_service = SecurityService.for_server(self.config)
            else:
                self.security_service = SecurityService.for_client(self.config)
        except CredentialLoadError as e:
            self.logger.error(f"Failed to load credentials: {e}")
            return False
        except ValueError as e:
            self.logger.error(f"Invalid identity configuration: {e}")
            return False

        self.logger.info(f"Loaded identity {self.security_service.bundle.subject}")
        return True

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            signal_name = signal.Signals(signum).name
            self.logger.info(f"Received {signal_name} signal, initiating graceful shutdown...")
            # The handler runs on the serving thread, which shutdown() would wait on
            threading.Thread(target=self.shutdown, name="mtls-shutdown").start()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def run_server(self, host: Optional[str] = None, port: Optional[int] = None) -> int:
        """Serve until interrupted."""
        self.server = MTLSServer(self.config, self.security_service, self.logging_service.rejection_tracker)
        try:
            self.server.bind(host, port)
        except OSError as e:
            self.logger.error(f"Could not listen on {host or self.config.host}:{port or self.config.port}: {e}")
            return 1

        self._setup_signal_handlers()
        self.server.serve_forever()

        summary = self.logging_service.get_rejection_summary()
        self.logger.info(
            f"Server stopped; {summary['total_rejections']} peer(s) rejected in the last 24 hours {summary['reasons']}"
        )
        return 0

    def run_client(self) -> int:
        """Perform one exchange, print the body to stdout and return the exit status."""
        client = MTLSClient(self.config, self.security_service)
        result = client.fetch()
        if result.ok:
            print(result.body)
            self.logging_service.log_with_context(
                'info', "Exchange completed",
                status_code=result.status_code,
                server=result.peer.subject if result.peer else None,
                elapsed_ms=round(result.elapsed_ms, 1)
            )
            return 0

        print(describe_error(result.error), file=sys.stderr)
        return 1

    def shutdown(self):
        """Perform graceful shutdown of the application."""
        if self.server is not None:
            self.server.shutdown()
        self.logger.info("Graceful shutdown completed")

    def get_status(self) -> dict:
        """Get application status information."""
        status = {
            'role': self.role,
            'config_path': self.config_path,
            'identity': self.security_service.bundle.subject if self.security_service else None,
            'trust_anchors': len(self.security_service.trust_anchors) if self.security_service else 0,
            'startup_time': self._started_at.isoformat()
        }
        if self.config is not None:
            status['revocation'] = "soft-fail" if self.config.revocation_soft_fail else "hard-fail"
            status['crl_files'] = len(self.config.crl_paths)
            if self.role == "server":
                status['listen'] = f"{self.config.host}:{self.config.port}"
            else:
                status['server'] = self.config.server_url
                status['expected_hostname'] = self.config.expected_hostname
        return status


def build_parser():
    """Build the command line parser."""
    import argparse

    parser = argparse.ArgumentParser(prog='mtls-demo', description='Mutual TLS demo server and client')
    subparsers = parser.add_subparsers(dest='role', required=True)

    for role in ("server", "client"):
        sub = subparsers.add_parser(role, help=f'Run the mTLS {role}')
        sub.add_argument('--config', '-c', help=f'Configuration file path (default: {DEFAULT_CONFIG_PATHS[role]})')
        sub.add_argument('--check-config', action='store_true',
                         help='Load configuration and credentials, then exit')
        sub.add_argument('--init-config', action='store_true',
                         help='Write a default configuration file and exit')
        if role == "server":
            sub.add_argument('--host', help='Host to bind to (uses config if not specified)')
            sub.add_argument('--port', type=int, help='Port to bind to (uses config if not specified)')

    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    app = MTLSApplication(args.role, config_path=args.config)

    if args.init_config:
        app.config_service.create_default_config_file(app.config_path, args.role)
        print(f"Default {args.role} configuration written to {app.config_path}")
        sys.exit(0)

    # Initialize application
    if not app.initialize():
        print(f"Failed to initialize mTLS {args.role}", file=sys.stderr)
        sys.exit(1)

    if args.check_config:
        print("Configuration check passed")
        for key, value in app.get_status().items():
            print(f"{key}: {value}")
        sys.exit(0)

    try:
        if args.role == "server":
            exit_code = app.run_server(host=args.host, port=args.port)
        else:
            exit_code = app.run_client()
    except KeyboardInterrupt:
        print("\nShutdown requested by user", file=sys.stderr)
        exit_code = 0
    finally:
        app.logging_service.shutdown()

    sys.exit(exit_code)


if __name__ == '__main__':
    main()

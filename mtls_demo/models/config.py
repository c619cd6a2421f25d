"""
Configuration data models for the mTLS demo server and client.
"""
from dataclasses import dataclass, field
from typing import List, Optional

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _validate_port(name: str, value) -> None:
    if not isinstance(value, int) or not (1 <= value <= 65535):
        raise ValueError(f"{name} must be an integer between 1 and 65535")


def _validate_positive(name: str, value) -> None:
    if not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"{name} must be a positive number")


def _validate_log_level(value: str) -> None:
    if value not in LOG_LEVELS:
        raise ValueError(f"log_level must be one of: {', '.join(LOG_LEVELS)}")


@dataclass
class ServerConfig:
    """Settings for the TLS server role."""

    # Network settings
    host: str = "0.0.0.0"
    port: int = 5001
    handshake_timeout_seconds: float = 10

    # Server identity
    cert_path: str = "certs/server.pfx"
    key_path: Optional[str] = None
    passphrase: Optional[str] = None

    # Client validation
    trust_anchor_path: str = "certs/ca.pem"
    allowed_subjects: List[str] = field(default_factory=list)
    allowed_common_names: List[str] = field(default_factory=list)

    # Revocation settings
    crl_paths: List[str] = field(default_factory=list)
    revocation_soft_fail: bool = True

    # Application settings
    log_level: str = "INFO"
    log_file_path: str = "logs/mtls_server.log"

    def __post_init__(self):
        """Validate configuration after initialization."""
        self._validate_types()

    def _validate_types(self):
        """Ensure all configuration values have correct types."""
        _validate_port("port", self.port)
        _validate_positive("handshake_timeout_seconds", self.handshake_timeout_seconds)
        _validate_log_level(self.log_level)


@dataclass
class ClientConfig:
    """Settings for the TLS client role."""

    # Network settings
    server_host: str = "localhost"
    server_port: int = 5001
    expected_hostname: Optional[str] = None
    request_path: str = "/"
    request_timeout_seconds: float = 10

    # Client identity
    cert_path: str = "certs/client.pfx"
    key_path: Optional[str] = None
    passphrase: Optional[str] = None

    # Server validation
    trust_anchor_path: str = "certs/ca.pem"

    # Revocation settings
    crl_paths: List[str] = field(default_factory=list)
    revocation_soft_fail: bool = True

    # Application settings
    log_level: str = "INFO"
    log_file_path: str = "logs/mtls_client.log"

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not self.expected_hostname:
            self.expected_hostname = self.server_host
        if not self.request_path.startswith("/"):
            self.request_path = "/" + self.request_path
        self._validate_types()

    def _validate_types(self):
        """Ensure all configuration values have correct types."""
        _validate_port("server_port", self.server_port)
        _validate_positive("request_timeout_seconds", self.request_timeout_seconds)
        _validate_log_level(self.log_level)

    @property
    def server_url(self) -> str:
        host = f"[{self.server_host}]" if ":" in self.server_host else self.server_host
        return f"https://{host}:{self.server_port}{self.request_path}"


@dataclass
class ConfigValidationError:
    """Represents a configuration validation error."""
    field: str
    message: str
    severity: str = "error"  # error, warning

    def __str__(self):
        return f"{self.severity.upper()}: {self.field} - {self.message}"


@dataclass
class ConfigValidationResult:
    """Result of configuration validation."""
    is_valid: bool
    errors: List[ConfigValidationError]
    warnings: List[ConfigValidationError]

    def __post_init__(self):
        """Separate errors and warnings."""
        all_issues = self.errors + self.warnings
        self.errors = [e for e in all_issues if e.severity == "error"]
        self.warnings = [e for e in all_issues if e.severity == "warning"]

    def has_errors(self) -> bool:
        """Check if there are any validation errors."""
        return len(self.errors) > 0

    def has_warnings(self) -> bool:
        """Check if there are any validation warnings."""
        return len(self.warnings) > 0

    def get_error_summary(self) -> str:
        """Get a formatted summary of all errors and warnings."""
        lines = []

        if self.errors:
            lines.append("Configuration Errors:")
            for error in self.errors:
                lines.append(f"  - {error}")

        if self.warnings:
            lines.append("Configuration Warnings:")
            for warning in self.warnings:
                lines.append(f"  - {warning}")

        return "\n".join(lines) if lines else "Configuration is valid"

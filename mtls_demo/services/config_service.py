"""
Configuration service for loading and validating server and client settings.
"""
import os
import configparser
from typing import Any, Dict, Type, Union
import logging

from cryptography import x509

from ..models.config import ClientConfig, ConfigValidationError, ConfigValidationResult, ServerConfig

# Keys shared by both roles: (config key, field name, type)
_COMMON_KEYS = [
    ("tls.cert_path", "cert_path", str),
    ("tls.key_path", "key_path", str),
    ("tls.passphrase", "passphrase", str),
    ("tls.trust_anchor_path", "trust_anchor_path", str),
    ("revocation.crl_paths", "crl_paths", list),
    ("revocation.soft_fail", "revocation_soft_fail", bool),
    ("app.log_level", "log_level", str),
    ("app.log_file_path", "log_file_path", str),
]

_SERVER_KEYS = _COMMON_KEYS + [
    ("server.host", "host", str),
    ("server.port", "port", int),
    ("server.handshake_timeout_seconds", "handshake_timeout_seconds", float),
    ("identity.allowed_subjects", "allowed_subjects", list),
    ("identity.allowed_common_names", "allowed_common_names", list),
]

_CLIENT_KEYS = _COMMON_KEYS + [
    ("client.server_host", "server_host", str),
    ("client.server_port", "server_port", int),
    ("client.expected_hostname", "expected_hostname", str),
    ("client.request_path", "request_path", str),
    ("client.request_timeout_seconds", "request_timeout_seconds", float),
]


def _build_mapping(keys) -> Dict[str, tuple]:
    """Accept every key both as section.key and as a bare key."""
    mapping = {}
    for config_key, field_name, field_type in keys:
        mapping[config_key] = (field_name, field_type)
        mapping[config_key.split(".", 1)[1]] = (field_name, field_type)
    return mapping


AnyConfig = Union[ServerConfig, ClientConfig]


class ConfigService:
    """Service for loading and validating mTLS demo configuration."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def load_server_config(self, config_path: str) -> ServerConfig:
        """
        Load server configuration from a property file.

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid or has validation errors
        """
        return self._load(config_path, ServerConfig, _build_mapping(_SERVER_KEYS))

    def load_client_config(self, config_path: str) -> ClientConfig:
        """
        Load client configuration from a property file.

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid or has validation errors
        """
        return self._load(config_path, ClientConfig, _build_mapping(_CLIENT_KEYS))

    def _load(self, config_path: str, config_cls: Type, mapping: Dict[str, tuple]):
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        # Load configuration from file
        config_data = self._load_config_file(config_path)

        # Create config object
        config = self._create_config_from_data(config_data, config_cls, mapping)

        # Validate configuration
        validation_result = self.validate_config(config)

        if validation_result.has_errors():
            error_summary = validation_result.get_error_summary()
            raise ValueError(f"Configuration validation failed:\n{error_summary}")

        # Log warnings if any
        if validation_result.has_warnings():
            warning_summary = validation_result.get_error_summary()
            self.logger.warning(f"Configuration warnings:\n{warning_summary}")

        self.logger.info(f"Loaded {config_cls.__name__} from {config_path}")
        return config

    def _load_config_file(self, config_path: str) -> Dict[str, Any]:
        """Load configuration data from file."""
        # Interpolation is off so passphrases may contain '%'
        config_parser = configparser.ConfigParser(interpolation=None)

        try:
            config_parser.read(config_path, encoding="utf-8")
        except configparser.Error as e:
            raise ValueError(f"Failed to parse configuration file: {e}")

        # Convert to flat dictionary
        config_data = {}
        for section in config_parser.sections():
            for key, value in config_parser.items(section):
                config_data[f"{section}.{key}"] = value

        # Also include DEFAULT section items without prefix
        for key, value in config_parser.defaults().items():
            if key not in config_data:
                config_data[key] = value

        return config_data

    def _create_config_from_data(self, config_data: Dict[str, Any], config_cls: Type,
                                 mapping: Dict[str, tuple]) -> AnyConfig:
        """Create a config object from configuration data."""
        config_kwargs = {}

        for config_key, raw_value in config_data.items():
            if config_key not in mapping:
                continue
            field_name, field_type = mapping[config_key]
            try:
                # Convert value to appropriate type
                if field_type == bool:
                    value = self._parse_bool(raw_value)
                elif field_type == int:
                    value = int(raw_value)
                elif field_type == float:
                    value = float(raw_value)
                elif field_type == list:
                    value = self._parse_list(raw_value)
                else:
                    value = str(raw_value).strip() or None
            except (ValueError, TypeError) as e:
                raise ValueError(f"Invalid value for {config_key}: {raw_value} ({e})")
            if value is not None:
                config_kwargs[field_name] = value

        try:
            return config_cls(**config_kwargs)
        except ValueError as e:
            raise ValueError(f"Invalid configuration: {e}")

    def _parse_bool(self, value: Any) -> bool:
        """Parse boolean value from string."""
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "yes", "1", "on", "enabled")
        return bool(value)

    def _parse_list(self, value: Any) -> list:
        """Parse a one-entry-per-line value; distinguished names contain commas so lines separate entries."""
        if isinstance(value, list):
            return value
        return [line.strip() for line in str(value).splitlines() if line.strip()]

    def validate_config(self, config: AnyConfig) -> ConfigValidationResult:
        """
        Validate configuration settings.

        Args:
            config: Server or client configuration to validate

        Returns:
            ConfigValidationResult with validation results
        """
        errors = []
        warnings = []

        # Credential files must exist before the process listens or connects
        cert_files = [
            ("cert_path", config.cert_path),
            ("trust_anchor_path", config.trust_anchor_path)
        ]
        if config.key_path:
            cert_files.append(("key_path", config.key_path))

        for field_name, cert_path in cert_files:
            if not cert_path:
                errors.append(ConfigValidationError(
                    field_name,
                    f"{field_name} is required"
                ))
            elif not os.path.exists(cert_path):
                errors.append(ConfigValidationError(
                    field_name,
                    f"Certificate file not found: {cert_path}"
                ))

        for crl_path in config.crl_paths:
            if not os.path.exists(crl_path):
                errors.append(ConfigValidationError(
                    "crl_paths",
                    f"CRL file not found: {crl_path}"
                ))

        if not config.revocation_soft_fail and not config.crl_paths:
            warnings.append(ConfigValidationError(
                "revocation_soft_fail",
                "Hard-fail revocation without CRLs rejects every peer",
                "warning"
            ))

        if isinstance(config, ServerConfig):
            self._validate_server(config, errors, warnings)
        else:
            self._validate_client(config, errors, warnings)

        # Validate log file path
        if config.log_file_path:
            log_dir = os.path.dirname(config.log_file_path)
            if log_dir and not os.path.exists(log_dir):
                warnings.append(ConfigValidationError(
                    "log_file_path",
                    f"Log directory does not exist: {log_dir}",
                    "warning"
                ))

        all_issues = errors + warnings
        return ConfigValidationResult(
            is_valid=len(errors) == 0,
            errors=all_issues,
            warnings=[]
        )

    def _validate_server(self, config: ServerConfig, errors, warnings) -> None:
        if not config.allowed_subjects and not config.allowed_common_names:
            errors.append(ConfigValidationError(
                "allowed_subjects",
                "An identity allow-list (allowed_subjects or allowed_common_names) is required"
            ))

        for subject in config.allowed_subjects:
            try:
                x509.Name.from_rfc4514_string(subject)
            except ValueError as e:
                errors.append(ConfigValidationError(
                    "allowed_subjects",
                    f"Invalid distinguished name '{subject}': {e}"
                ))

        if config.handshake_timeout_seconds > 60:
            warnings.append(ConfigValidationError(
                "handshake_timeout_seconds",
                "Handshake timeout over 1 minute lets stalled peers hold connections",
                "warning"
            ))

    def _validate_client(self, config: ClientConfig, errors, warnings) -> None:
        if config.request_timeout_seconds > 300:
            warnings.append(ConfigValidationError(
                "request_timeout_seconds",
                "Request timeout over 5 minutes may cause performance issues",
                "warning"
            ))

    def create_default_config_file(self, config_path: str, role: str = "server") -> None:
        """
        Create a default configuration file with example settings.

        Args:
            config_path: Path where to create the config file
            role: "server" or "client"
        """
        if role not in ("server", "client"):
            raise ValueError(f"Unknown role: {role}")
        config_content = DEFAULT_SERVER_CONFIG if role == "server" else DEFAULT_CLIENT_CONFIG

        # Ensure directory exists
        config_dir = os.path.dirname(config_path)
        if config_dir:
            os.makedirs(config_dir, exist_ok=True)

        with open(config_path, 'w', encoding='utf-8') as f:
            f.write(config_content)

        self.logger.info(f"Created default {role} configuration file: {config_path}")


DEFAULT_SERVER_CONFIG = """# mTLS Demo Server Configuration

[server]
host = 0.0.0.0
port = 5001
handshake_timeout_seconds = 10

[tls]
# PKCS#12 archive, or PEM certificate with key_path pointing at the PEM key
cert_path = certs/server.pfx
passphrase = 123456
trust_anchor_path = certs/ca.pem

[identity]
# One entry per line; matched exactly, never as substrings
allowed_subjects =
    CN=MyClient
allowed_common_names =

[revocation]
crl_paths =
soft_fail = true

[app]
log_level = INFO
log_file_path = logs/mtls_server.log
"""

DEFAULT_CLIENT_CONFIG = """# mTLS Demo Client Configuration

[client]
server_host = localhost
server_port = 5001
expected_hostname = localhost
request_path = /
request_timeout_seconds = 10

[tls]
cert_path = certs/client.pfx
passphrase = 123456
trust_anchor_path = certs/ca.pem

[revocation]
crl_paths =
soft_fail = true

[app]
log_level = INFO
log_file_path = logs/mtls_client.log
"""

"""
Models package for the mTLS demo configuration.
"""

from .config import ClientConfig, ConfigValidationError, ConfigValidationResult, ServerConfig

__all__ = [
    'ClientConfig',
    'ConfigValidationError',
    'ConfigValidationResult',
    'ServerConfig'
]

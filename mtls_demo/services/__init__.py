"""
Services package for the mTLS demo.
"""

from .config_service import ConfigService
from .logging_service import LoggingService, RejectionTracker

__all__ = [
    'ConfigService',
    'LoggingService',
    'RejectionTracker'
]

"""
Logging and rejection tracking for the mTLS demo server and client.
"""
import json
import logging
import logging.handlers
import sys
import threading
import traceback
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..security.models import RejectReason


@dataclass
class LogEntry:
    """Structured log entry for JSON logging."""
    timestamp: str
    level: str
    logger_name: str
    message: str
    module: str
    function: str
    line_number: int
    thread_id: int
    process_id: int
    extra_data: Optional[Dict[str, Any]] = None
    exception_info: Optional[Dict[str, Any]] = None


@dataclass
class RejectionRecord:
    """One rejected connection, kept for local diagnostics only."""
    reason: str
    subject: Optional[str]
    peer_address: Optional[str]
    detail: Optional[str]
    timestamp: str


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = LogEntry(
            timestamp=datetime.fromtimestamp(record.created).isoformat(),
            level=record.levelname,
            logger_name=record.name,
            message=record.getMessage(),
            module=record.module,
            function=record.funcName,
            line_number=record.lineno,
            thread_id=record.thread,
            process_id=record.process,
            extra_data=getattr(record, 'extra_data', None)
        )

        # Add exception information if present
        if record.exc_info:
            log_entry.exception_info = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': traceback.format_exception(*record.exc_info)
            }

        return json.dumps(asdict(log_entry), default=str)


class RejectionTracker:
    """Thread-safe record of rejected peers, by reason."""

    def __init__(self, max_records: int = 1000):
        self.records: List[RejectionRecord] = []
        self.max_records = max_records
        self.lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def record(self, reason: RejectReason, subject: Optional[str] = None,
               peer_address: Optional[str] = None, detail: Optional[str] = None) -> RejectionRecord:
        """Record a rejection and log it with the peer's claimed subject."""
        record = RejectionRecord(
            reason=str(reason),
            subject=subject,
            peer_address=peer_address,
            detail=detail,
            timestamp=datetime.now().isoformat()
        )

        with self.lock:
            self.records.append(record)
            if len(self.records) > self.max_records:
                del self.records[:len(self.records) - self.max_records]

        self.logger.warning(
            f"Rejected peer {peer_address or 'unknown'}: {record.reason} "
            f"(claimed subject: {subject or 'unavailable'})",
            extra={'extra_data': asdict(record)}
        )
        return record

    def get_records(self, reason: Optional[RejectReason] = None,
                    since: Optional[datetime] = None) -> List[RejectionRecord]:
        """Get rejection records with optional filtering."""
        with self.lock:
            filtered = self.records.copy()

        if reason:
            filtered = [r for r in filtered if r.reason == str(reason)]

        if since:
            since_iso = since.isoformat()
            filtered = [r for r in filtered if r.timestamp >= since_iso]

        return filtered

    def get_summary(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Get rejection summary statistics."""
        records = self.get_records(since=since)

        if not records:
            return {'total_rejections': 0, 'reasons': {}}

        reasons: Dict[str, int] = {}
        for record in records:
            reasons[record.reason] = reasons.get(record.reason, 0) + 1

        return {
            'total_rejections': len(records),
            'reasons': reasons,
            'most_common_reason': max(reasons.items(), key=lambda x: x[1])[0]
        }


class LoggingService:
    """Process-wide logging setup plus rejection tracking."""

    def __init__(self, config, console_stream=None):
        """Initialize logging service with configuration (server or client)."""
        self.config = config
        self.console_stream = console_stream or sys.stderr
        self.rejection_tracker = RejectionTracker()
        self.handlers: List[logging.Handler] = []
        self._setup_logging()
        self.logger = logging.getLogger(__name__)
        self.logger.info("Logging service initialized")

    def _setup_logging(self):
        """Setup logging configuration."""
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        # Set log level
        log_level = getattr(logging, self.config.log_level.upper(), logging.INFO)
        root_logger.setLevel(log_level)

        # Create formatters
        json_formatter = JSONFormatter()
        console_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

        # Console handler; the client's stdout is reserved for the response body
        console_handler = logging.StreamHandler(self.console_stream)
        console_handler.setFormatter(console_formatter)
        console_handler.setLevel(log_level)
        root_logger.addHandler(console_handler)
        self.handlers.append(console_handler)

        if not self.config.log_file_path:
            return

        # Create logs directory
        log_path = Path(self.config.log_file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        # Setup file handler with rotation
        file_handler = logging.handlers.RotatingFileHandler(
            filename=str(log_path),
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(json_formatter)
        file_handler.setLevel(log_level)

        # Setup error file handler (JSON format for errors only)
        error_handler = logging.handlers.RotatingFileHandler(
            filename=str(log_path.with_suffix('.errors.log')),
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=3,
            encoding='utf-8'
        )
        error_handler.setFormatter(json_formatter)
        error_handler.setLevel(logging.ERROR)

        root_logger.addHandler(file_handler)
        root_logger.addHandler(error_handler)
        self.handlers.extend([file_handler, error_handler])

    def log_with_context(self, level: str, message: str, **context):
        """Log message with additional context data."""
        logger = logging.getLogger('mtls_demo')
        log_method = getattr(logger, level.lower(), logger.info)
        log_method(message, extra={'extra_data': context})

    def get_rejection_summary(self, since_hours: int = 24) -> Dict[str, Any]:
        """Get rejection summary for the specified time period."""
        since = datetime.now() - timedelta(hours=since_hours)
        return self.rejection_tracker.get_summary(since=since)

    def shutdown(self):
        """Flush, close and detach the handlers installed by this service."""
        root_logger = logging.getLogger()
        for handler in self.handlers:
            handler.flush()
            handler.close()
            root_logger.removeHandler(handler)
        self.handlers = []

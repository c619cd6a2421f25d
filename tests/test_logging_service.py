"""
Tests for structured logging and rejection tracking.
"""
import io
import json
import logging
import os
import shutil
import sys
import tempfile
import threading
import unittest
from datetime import datetime, timedelta

from mtls_demo.models.config import ServerConfig
from mtls_demo.security.models import RejectReason
from mtls_demo.services.logging_service import JSONFormatter, LoggingService, RejectionTracker


class TestJSONFormatter(unittest.TestCase):
    """Test JSON formatter for structured logging."""

    def setUp(self):
        self.formatter = JSONFormatter()

    def test_format_basic_log_record(self):
        logger = logging.getLogger('test')
        record = logger.makeRecord(
            name='mtls_demo.server',
            level=logging.INFO,
            fn='server.py',
            lno=42,
            msg='Client %s authenticated',
            args=('MyClient',),
            exc_info=None
        )

        log_data = json.loads(self.formatter.format(record))

        self.assertEqual(log_data['level'], 'INFO')
        self.assertEqual(log_data['logger_name'], 'mtls_demo.server')
        self.assertEqual(log_data['message'], 'Client MyClient authenticated')
        self.assertEqual(log_data['line_number'], 42)
        self.assertIsNone(log_data['exception_info'])

    def test_format_log_record_with_exception_and_extra_data(self):
        logger = logging.getLogger('test')
        try:
            raise ValueError("bad certificate")
        except ValueError:
            record = logger.makeRecord(
                name='mtls_demo.client',
                level=logging.ERROR,
                fn='client.py',
                lno=7,
                msg='Request failed',
                args=(),
                exc_info=sys.exc_info(),
                extra={'extra_data': {'reason': 'Expired'}}
            )

        log_data = json.loads(self.formatter.format(record))

        self.assertEqual(log_data['exception_info']['type'], 'ValueError')
        self.assertEqual(log_data['exception_info']['message'], 'bad certificate')
        self.assertEqual(log_data['extra_data'], {'reason': 'Expired'})


class TestRejectionTracker(unittest.TestCase):
    """Test cases for RejectionTracker."""

    def setUp(self):
        self.tracker = RejectionTracker(max_records=5)

    def test_record_logs_claimed_subject(self):
        with self.assertLogs('mtls_demo.services.logging_service', level='WARNING') as logs:
            record = self.tracker.record(
                RejectReason.IDENTITY_MISMATCH,
                subject="CN=EvilMyClientImpersonator",
                peer_address="127.0.0.1:40000",
                detail="not allowed"
            )

        self.assertEqual(record.reason, "IdentityMismatch")
        self.assertIn("CN=EvilMyClientImpersonator", logs.output[0])
        self.assertIn("127.0.0.1:40000", logs.output[0])

    def test_record_without_subject(self):
        with self.assertLogs('mtls_demo.services.logging_service', level='WARNING') as logs:
            self.tracker.record(RejectReason.UNTRUSTED_CHAIN)

        self.assertIn("claimed subject: unavailable", logs.output[0])

    def test_summary(self):
        self.assertEqual(self.tracker.get_summary(), {'total_rejections': 0, 'reasons': {}})

        self.tracker.record(RejectReason.EXPIRED)
        self.tracker.record(RejectReason.UNTRUSTED_CHAIN)
        self.tracker.record(RejectReason.UNTRUSTED_CHAIN)

        summary = self.tracker.get_summary()
        self.assertEqual(summary['total_rejections'], 3)
        self.assertEqual(summary['reasons'], {'Expired': 1, 'UntrustedChain': 2})
        self.assertEqual(summary['most_common_reason'], 'UntrustedChain')

    def test_filtering(self):
        self.tracker.record(RejectReason.EXPIRED)
        self.tracker.record(RejectReason.REVOKED)

        self.assertEqual(len(self.tracker.get_records(reason=RejectReason.REVOKED)), 1)
        self.assertEqual(self.tracker.get_records(since=datetime.now() + timedelta(hours=1)), [])

    def test_max_records(self):
        for _ in range(8):
            self.tracker.record(RejectReason.EXPIRED)

        self.assertEqual(len(self.tracker.get_records()), 5)

    def test_concurrent_recording(self):
        tracker = RejectionTracker()
        threads = [
            threading.Thread(target=lambda: [tracker.record(RejectReason.EXPIRED) for _ in range(25)])
            for _ in range(4)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(tracker.get_summary()['total_rejections'], 100)


class TestLoggingService(unittest.TestCase):
    """Test cases for LoggingService."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        root_logger = logging.getLogger()
        self._saved_handlers = root_logger.handlers[:]
        self._saved_level = root_logger.level

    def tearDown(self):
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            handler.close()
            root_logger.removeHandler(handler)
        for handler in self._saved_handlers:
            root_logger.addHandler(handler)
        root_logger.setLevel(self._saved_level)
        shutil.rmtree(self.temp_dir)

    def _config(self, **overrides):
        values = {
            'log_level': 'DEBUG',
            'log_file_path': os.path.join(self.temp_dir, 'logs', 'mtls_server.log'),
        }
        values.update(overrides)
        return ServerConfig(**values)

    def test_creates_rotating_json_log_files(self):
        config = self._config()
        stream = io.StringIO()

        service = LoggingService(config, console_stream=stream)
        service.log_with_context('warning', 'Handshake failed', peer='127.0.0.1:1')
        for handler in logging.getLogger().handlers:
            handler.flush()

        self.assertTrue(os.path.exists(config.log_file_path))
        self.assertTrue(os.path.exists(os.path.join(self.temp_dir, 'logs', 'mtls_server.errors.log')))
        with open(config.log_file_path, encoding='utf-8') as f:
            entries = [json.loads(line) for line in f if line.strip()]
        context_entries = [e for e in entries if e['message'] == 'Handshake failed']
        self.assertEqual(context_entries[0]['extra_data'], {'peer': '127.0.0.1:1'})
        self.assertIn('Handshake failed', stream.getvalue())

    def test_log_level_applied(self):
        LoggingService(self._config(log_level='WARNING'), console_stream=io.StringIO())

        self.assertEqual(logging.getLogger().level, logging.WARNING)

    def test_console_only_without_log_file(self):
        config = self._config()
        config.log_file_path = None

        LoggingService(config, console_stream=io.StringIO())

        self.assertEqual(len(logging.getLogger().handlers), 1)

    def test_shutdown_detaches_own_handlers(self):
        service = LoggingService(self._config(), console_stream=io.StringIO())
        root_logger = logging.getLogger()
        self.assertEqual(len(root_logger.handlers), 3)

        service.shutdown()

        self.assertEqual(root_logger.handlers, [])

    def test_rejection_summary(self):
        service = LoggingService(self._config(), console_stream=io.StringIO())
        service.rejection_tracker.record(RejectReason.REVOKED)

        summary = service.get_rejection_summary(since_hours=1)

        self.assertEqual(summary['total_rejections'], 1)


if __name__ == '__main__':
    unittest.main()

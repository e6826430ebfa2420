"""
Logging Tests

Structured field formatting and configuration guards.

Run: python -m pytest test/test_logging.py -v
"""

import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from wikisdk.logging import StructuredFormatter, configureLogging, getLogger


class TestStructuredFormatter:

    def test_fields_appended(self):
        formatter = StructuredFormatter('%(levelname)s - %(message)s')
        record = logging.LogRecord('wiki.test', logging.INFO, __file__, 1, "[Bridge] Denied send", None, None)
        record.connId = 'c-1'
        record.peer = '127.0.0.1'

        line = formatter.format(record)

        assert line == "INFO - [Bridge] Denied send [connId=c-1, peer=127.0.0.1]"
        # Original message left for other handlers
        assert record.msg == "[Bridge] Denied send"

    def test_no_fields(self):
        formatter = StructuredFormatter('%(message)s')
        record = logging.LogRecord('wiki.test', logging.INFO, __file__, 1, "plain", None, None)

        assert formatter.format(record) == "plain"


class TestConfigureLogging:

    def test_unknown_level_rejected(self):
        with pytest.raises(ValueError):
            configureLogging(level='LOUD')

    def test_structured_kwargs_accepted(self, caplog):
        log = getLogger('wiki.test.kwargs')
        log.propagate = True

        with caplog.at_level(logging.INFO, logger='wiki.test.kwargs'):
            log.info("[StoreEngine] Ready", maxPoolSize=4)

        assert caplog.records[-1].maxPoolSize == 4

    def test_log_file_per_app(self, tmp_path):
        configureLogging(logDir=str(tmp_path), console=False, level='DEBUG')
        try:
            log = getLogger('fileapp.component')
            log.debug("[Component] Written", key='value')
            for handler in log.handlers:
                handler.flush()

            content = (tmp_path / 'fileapp.log').read_text()
            assert "[Component] Written [key=value]" in content
        finally:
            configureLogging()

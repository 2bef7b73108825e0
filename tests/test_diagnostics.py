"""Tests for diagnostics.py — hex previews and the log sink fan-out."""

import logging
from unittest.mock import MagicMock

from hidbridge.diagnostics import HEX_PREVIEW_BYTES, Reporter, compose_hex


class TestComposeHex:

    def test_short(self):
        assert compose_hex(b"Hello") == "48 65 6c 6c 6f"

    def test_empty(self):
        assert compose_hex(b"") == ""

    def test_truncated(self):
        text = compose_hex(bytes(HEX_PREVIEW_BYTES + 10))
        assert text.endswith("(+10)")


class TestReporter:

    def test_formats_for_sink(self):
        sink = MagicMock()
        Reporter(logging.getLogger("test"), sink).info("EP 0x%02x: %d", 0x81, 12)
        sink.assert_called_once_with("EP 0x81: 12")

    def test_child_shares_sink(self):
        sink = MagicMock()
        child = Reporter(logging.getLogger("a"), sink).child(logging.getLogger("b"))
        child.warning("plain")
        sink.assert_called_once_with("plain")
        assert child.logger.name == "b"

    def test_sink_error_is_logged_not_raised(self, caplog):
        sink = MagicMock(side_effect=RuntimeError("ui gone"))
        with caplog.at_level(logging.ERROR):
            Reporter(logging.getLogger("test"), sink).error("boom")
        assert "Log sink raised" in caplog.text

    def test_no_sink(self, caplog):
        with caplog.at_level(logging.DEBUG):
            Reporter(logging.getLogger("test")).debug("only %s", "logged")
        assert "only logged" in caplog.text

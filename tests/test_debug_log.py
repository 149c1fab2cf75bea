"""Tests for the debug_log module enable/disable functionality."""

import tempfile
from pathlib import Path
from unittest import mock

from livecue import debug_log


class TestDebugLogEnableDisable:
    """Test the enable/disable functionality of debug logging."""

    def setup_method(self):
        """Reset debug log state before each test."""
        debug_log.disable()

    def teardown_method(self):
        debug_log.disable()

    def test_disabled_by_default(self):
        assert not debug_log.is_enabled()

    def test_enable(self):
        debug_log.enable()
        assert debug_log.is_enabled()

    def test_disable(self):
        debug_log.enable()
        debug_log.disable()
        assert not debug_log.is_enabled()

    def test_no_op_when_disabled(self):
        """Nothing touches the filesystem while logging is off."""
        with mock.patch.object(debug_log, '_ensure_log_dir') as mock_ensure:
            debug_log.clear_logs()
            debug_log.log_alignment("hello", 0, 1)
            debug_log.log_cursor_move(0, 1, "aligned")
            debug_log.log_broadcast("studio", "final", 2, "hello")
            mock_ensure.assert_not_called()


class TestDebugLogWrites:
    """Log files are written into LOG_DIR when enabled."""

    def setup_method(self):
        debug_log.enable()

    def teardown_method(self):
        debug_log.disable()

    def test_clear_logs_writes_when_enabled(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with mock.patch.object(debug_log, "LOG_DIR", Path(tmpdir) / "logs"):
                debug_log.clear_logs()

                assert debug_log.alignment_log().exists()
                assert debug_log.broadcast_log().exists()
                assert "New session started" in debug_log.alignment_log().read_text()

    def test_alignment_entries(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with mock.patch.object(debug_log, "LOG_DIR", Path(tmpdir)):
                debug_log.log_alignment("how are you", 1, 1)
                debug_log.log_alignment("something else", 2, None)
                debug_log.log_cursor_move(1, 2, "aligned")

                content = debug_log.alignment_log().read_text()
                assert 'cur=   1 match=   1 text="how are you"' in content
                assert "match=none" in content
                assert "CURSOR 1 -> 2 (aligned)" in content

    def test_broadcast_entries(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with mock.patch.object(debug_log, "LOG_DIR", Path(tmpdir)):
                debug_log.log_broadcast("studio", "final", 3, "hello there")

                content = debug_log.broadcast_log().read_text()
                assert "room=studio delivered=3 hello there" in content

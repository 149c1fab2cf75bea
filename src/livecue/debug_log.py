"""
Debug logging for diagnosing alignment and delivery problems.

Creates two log files:
- alignment.log: Transcripts fed to the aligner, matches and cursor moves
- broadcast.log: Events published by the server and how many viewers got them

Logging is disabled by default. Call enable() to turn it on.
"""

from datetime import datetime
from pathlib import Path

# Log files location (in the working directory)
LOG_DIR: Path = Path.cwd() / "logs"

# Global flag to control whether debug logging is enabled
_ENABLED: bool = False  # pylint: disable=invalid-name


def enable() -> None:
    """Enable debug logging."""
    global _ENABLED  # pylint: disable=global-statement
    _ENABLED = True


def disable() -> None:
    """Disable debug logging."""
    global _ENABLED  # pylint: disable=global-statement
    _ENABLED = False


def is_enabled() -> bool:
    """Check if debug logging is enabled."""
    return _ENABLED


def alignment_log() -> Path:
    """Path of the client-side alignment log."""
    return LOG_DIR / "alignment.log"


def broadcast_log() -> Path:
    """Path of the server-side broadcast log."""
    return LOG_DIR / "broadcast.log"


def _ensure_log_dir() -> None:
    """Create log directory if it doesn't exist."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)


def _timestamp() -> str:
    """Get current timestamp."""
    return datetime.now().strftime("%H:%M:%S.%f")[:-3]


def _append(log_file: Path, line: str) -> None:
    _ensure_log_dir()
    with open(log_file, 'a', encoding='utf-8') as f:
        f.write(f"[{_timestamp()}] {line}\n")


def clear_logs() -> None:
    """Clear both log files for a fresh session."""
    if not _ENABLED:
        return
    _ensure_log_dir()
    log_file: Path
    for log_file in [alignment_log(), broadcast_log()]:
        with open(log_file, 'w', encoding='utf-8') as f:
            f.write(
                f"=== New session started at {datetime.now().isoformat()} ===\n\n")


def log_alignment(transcript: str, current_index: int, match_index: int | None) -> None:
    """
    Log one alignment attempt.

    Args:
        transcript: The final transcript text
        current_index: Cursor position the aligner started from
        match_index: Matched sentence, or None for no match
    """
    if not _ENABLED:
        return
    match = "none" if match_index is None else f"{match_index:4d}"
    _append(alignment_log(),
            f"align   cur={current_index:4d} match={match} text=\"{transcript[-60:]}\"")


def log_cursor_move(old_index: int, new_index: int, reason: str) -> None:
    """Log a cursor position change (reason: aligned or manual)."""
    if not _ENABLED:
        return
    _append(alignment_log(), f"CURSOR {old_index} -> {new_index} ({reason})")


def log_broadcast(room: str, kind: str, delivered: int, detail: str = "") -> None:
    """Log an event fanned out to a room."""
    if not _ENABLED:
        return
    _append(broadcast_log(),
            f"{kind:10} room={room} delivered={delivered} {detail[-60:]}".rstrip())

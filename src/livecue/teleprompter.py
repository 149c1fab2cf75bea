# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Terminal teleprompter client.

Follows a room's transcript stream and keeps a script cursor in step with
the speaker: interim transcripts are only shown, final transcripts move the
highlighted sentence.
"""

import logging
import shutil
import textwrap
from collections.abc import Callable
from pathlib import Path

from .cursor import CursorUpdate, ScriptCursor
from .protocol import ConnectionState
from .transport import (
    RemoteStatus,
    StateChanged,
    StreamTransport,
    TranscriptReceived,
    TransportEvent,
)

logger = logging.getLogger(__name__)

# ANSI escape sequences for the terminal view
BOLD: str = "\033[1m"
DIM: str = "\033[2m"
REVERSE: str = "\033[7m"
RESET: str = "\033[0m"
CLEAR_SCREEN: str = "\033[2J\033[H"

UPCOMING_SENTENCES: int = 3


class Teleprompter:
    """
    Wires a StreamTransport to a ScriptCursor.

    The teleprompter registers itself as the transport's event handler, so
    each transport should drive at most one teleprompter.
    """

    def __init__(
        self,
        transport: StreamTransport,
        cursor: ScriptCursor,
        on_change: Callable[[CursorUpdate], None] | None = None
    ) -> None:
        """
        Args:
            transport: The room subscription to follow
            cursor: The script position to keep in step
            on_change: Called after every transcript and every manual move
        """
        self.transport: StreamTransport = transport
        self.cursor: ScriptCursor = cursor
        self.on_change: Callable[[CursorUpdate], None] | None = on_change
        self.interim_text: str = ""
        self.status_text: str = ""
        transport.on_event(self.handle_event)

    def handle_event(self, event: TransportEvent) -> None:
        """Transport event handler."""
        if isinstance(event, TranscriptReceived):
            transcript = event.event
            if transcript.is_final:
                self.interim_text = ""
            else:
                self.interim_text = transcript.text
            self._notify(self.cursor.update(transcript))
        elif isinstance(event, RemoteStatus):
            self.status_text = event.message.message or event.message.status
        elif isinstance(event, StateChanged):
            if event.current == ConnectionState.ERROR:
                logger.warning("Transcript stream failed: %s", event.error)
            self._notify(CursorUpdate(
                previous_index=self.cursor.current_index,
                current_index=self.cursor.current_index,
            ))

    async def start(self) -> None:
        """Connect to the room."""
        await self.transport.connect()

    async def stop(self) -> None:
        """Disconnect from the room."""
        await self.transport.disconnect()

    def jump_to(self, index: int) -> None:
        """Manually move the cursor to a sentence."""
        previous = self.cursor.current_index
        self.cursor.jump_to(index)
        self._notify(CursorUpdate(previous_index=previous,
                                  current_index=self.cursor.current_index))

    def reset(self) -> None:
        """Back to the first sentence."""
        previous = self.cursor.current_index
        self.cursor.reset()
        self._notify(CursorUpdate(previous_index=previous, current_index=0))

    def load_script(self, script_text: str) -> None:
        """Replace the script and start from the top."""
        previous = self.cursor.current_index
        self.cursor.set_script(script_text)
        self.interim_text = ""
        self._notify(CursorUpdate(previous_index=previous, current_index=0))

    def handle_command(self, command: str) -> bool:
        """
        Apply one typed command.

        Commands: empty or "n" for the next sentence, "p" for the previous
        one, a sentence number (1-based) to jump there, "r" to reset and
        "o <file>" to open another script.

        Returns:
            False if the command was not recognized
        """
        command = command.strip()
        index = self.cursor.current_index
        if command in ("", "n"):
            self.jump_to(index + 1)
        elif command == "p":
            self.jump_to(index - 1)
        elif command == "r":
            self.reset()
        elif command.isdigit():
            self.jump_to(int(command) - 1)
        elif command.startswith("o "):
            path = Path(command[2:].strip()).expanduser()
            try:
                script_text = path.read_text(encoding="utf-8")
            except OSError as e:
                logger.warning("Cannot open script %s: %s", path, e)
                self.status_text = f"Cannot open {path}"
                self._notify(CursorUpdate(previous_index=index, current_index=index))
                return True
            self.load_script(script_text)
        else:
            return False
        return True

    def _notify(self, update: CursorUpdate) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(update)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Teleprompter change callback failed: %s", e, exc_info=True)

    def render(self, width: int | None = None, color: bool = True) -> str:
        """
        Render the teleprompter as terminal text.

        Shows the previous sentence dimmed, the current sentence highlighted,
        a few upcoming sentences, then the connection state and the latest
        interim transcript.

        Args:
            width: Wrap width, or None to use the terminal width
            color: Use ANSI styling

        Returns:
            The rendered view (no trailing newline)
        """
        if width is None:
            width = shutil.get_terminal_size((80, 24)).columns

        def style(text: str, code: str) -> str:
            return f"{code}{text}{RESET}" if color else text

        def wrap(text: str, prefix: str) -> list[str]:
            return textwrap.wrap(text, width=max(20, width - len(prefix)),
                                 initial_indent=prefix,
                                 subsequent_indent=" " * len(prefix)) or [prefix]

        lines: list[str] = []
        cursor = self.cursor
        index = cursor.current_index

        if cursor.sentence_count == 0:
            lines.append(style("(no script loaded)", DIM))
        else:
            if index > 0:
                for line in wrap(cursor.sentences[index - 1].text, "  "):
                    lines.append(style(line, DIM))
            current = cursor.current_sentence
            if current is None:
                lines.append(style("-- end of script --", BOLD))
            else:
                for line in wrap(current.text, "> "):
                    lines.append(style(line, REVERSE + BOLD))
            for sentence in cursor.sentences[index + 1:index + 1 + UPCOMING_SENTENCES]:
                lines.extend(wrap(sentence.text, "  "))

        lines.append("")
        position = f"{min(index + 1, cursor.sentence_count)}/{cursor.sentence_count}"
        state = self.transport.state.value
        footer = f"[{state}] sentence {position} ({cursor.progress:.0%})"
        if self.transport.last_error and self.transport.state != ConnectionState.CONNECTED:
            footer += f" - {self.transport.last_error}"
        if self.status_text:
            footer += f" | {self.status_text}"
        lines.append(style(footer, DIM))
        if self.interim_text:
            lines.append(style(f"... {self.interim_text}", DIM))
        return "\n".join(lines)

# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Error types shared by the server fan-out and the client transport.

None of these cross the event-consumer boundary: the component that catches
one records it as state (connection state, last error string) instead.
"""


class LivecueError(Exception):
    """Base class for livecue errors."""


class TransportError(LivecueError):
    """The stream connection could not be opened or was dropped."""


class ParseError(LivecueError):
    """A received frame is not valid JSON or is not a recognized message."""


class CapacityError(LivecueError):
    """Reconnect attempts are exhausted."""


class SinkWriteError(LivecueError):
    """Writing to one subscriber's sink failed."""

# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Speech source registry.

The microphone source pulls in sounddevice and Vosk, which need native
libraries, so it is imported only when actually requested.
"""

from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from ..speech_source import ScriptedSpeechSource, SpeechSource

if TYPE_CHECKING:
    from .vosk_provider import ModelInfo

SOURCE_KINDS: tuple[str, ...] = ("scripted", "microphone")


def create_source(
    kind: str,
    *,
    script_text: str = "",
    model_id: str = "vosk-en-us-small",
    device: int | None = None,
    chunk_ms: int = 100,
    word_delay: float = 0.25
) -> SpeechSource:
    """
    Create a speech source.

    Args:
        kind: "scripted" or "microphone"
        script_text: Text replayed by the scripted source
        model_id: Vosk model for the microphone source
        device: Audio input device for the microphone source
        chunk_ms: Capture chunk size for the microphone source
        word_delay: Seconds between words for the scripted source

    Returns:
        A new, unopened speech source
    """
    if kind == "scripted":
        return ScriptedSpeechSource.from_script(script_text, word_delay=word_delay)
    if kind == "microphone":
        from .vosk_provider import VoskMicrophoneSource

        return VoskMicrophoneSource(model_id=model_id, device=device, chunk_ms=chunk_ms)
    raise ValueError(f"Unknown speech source: {kind}. Choose from: {list(SOURCE_KINDS)}")


def download_model(
    model_id: str,
    target_dir: str | None = None,
    progress_callback: Callable[[str, int], None] | None = None
) -> str:
    """Download a Vosk model and return its path."""
    from .vosk_provider import VoskMicrophoneSource

    return VoskMicrophoneSource.download_model(model_id, target_dir, progress_callback)


def is_model_downloaded(model_id: str) -> bool:
    """Check whether a Vosk model is present in the local cache."""
    from .vosk_provider import MODEL_CACHE_DIR, VoskMicrophoneSource

    info = VoskMicrophoneSource.MODELS.get(model_id)
    if info is None:
        return Path(model_id).exists()
    return (MODEL_CACHE_DIR / info["dir"]).exists()


def available_models() -> list['ModelInfo']:
    """Models the microphone source can download."""
    from .vosk_provider import VoskMicrophoneSource

    return VoskMicrophoneSource.get_available_models()

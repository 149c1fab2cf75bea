# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Vosk microphone speech source.

Captures the local microphone with sounddevice and recognizes it with a
Vosk KaldiRecognizer. Recognition is blocking, so it runs in the default
executor to keep the event loop free for the HTTP host.
"""

import asyncio
import json
import logging
import os
import tempfile
import urllib.request
import zipfile
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from vosk import KaldiRecognizer, Model, SetLogLevel

from ..audio import AudioCapture
from ..protocol import WordTimestamp
from ..speech_source import SpeechResult, SpeechSource

logger = logging.getLogger(__name__)

# Suppress Vosk's verbose logging
SetLogLevel(-1)

MODEL_CACHE_DIR: Path = Path.home() / ".cache" / "livecue" / "models"


@dataclass
class ModelInfo:
    """Information about an available recognition model."""

    id: str  # Unique identifier (e.g., "vosk-en-us-small")
    name: str  # Display name (e.g., "English US - Small")
    size_mb: int | None = None
    description: str | None = None


class VoskMicrophoneSource(SpeechSource):
    """Vosk speech recognition over live microphone audio."""

    # Available Vosk models with metadata
    MODELS: dict[str, dict[str, Any]] = {
        "vosk-en-us-small": {
            "dir": "vosk-model-small-en-us-0.15",
            "name": "English US - Small",
            "size_mb": 40,
            "url": "https://alphacephei.com/vosk/models/vosk-model-small-en-us-0.15.zip",
        },
        "vosk-en-us-medium": {
            "dir": "vosk-model-en-us-0.22",
            "name": "English US - Medium",
            "size_mb": 1800,
            "url": "https://alphacephei.com/vosk/models/vosk-model-en-us-0.22.zip",
        },
        "vosk-en-gb-small": {
            "dir": "vosk-model-small-en-gb-0.15",
            "name": "English GB - Small",
            "size_mb": 40,
            "url": "https://alphacephei.com/vosk/models/vosk-model-small-en-gb-0.15.zip",
        },
    }

    def __init__(
        self,
        model_id: str = "vosk-en-us-small",
        device: int | None = None,
        sample_rate: int = 16000,
        chunk_ms: int = 100
    ) -> None:
        """
        Args:
            model_id: Model identifier, or a path to a custom model directory
            device: Audio input device index, or None for the default
            sample_rate: Audio sample rate (shared by capture and recognizer)
            chunk_ms: Capture chunk size in milliseconds
        """
        self.model_id: str = model_id
        self.model_path: str = self._get_model_path(model_id)
        self.device: int | None = device
        self.sample_rate: int = sample_rate
        self.chunk_ms: int = chunk_ms

        self.model: Model | None = None
        self.recognizer: KaldiRecognizer | None = None
        self.audio: AudioCapture | None = None
        self._last_partial: str = ""

    async def open(self) -> None:
        if not os.path.exists(self.model_path):
            raise RuntimeError(
                f"Vosk model not found at {self.model_path}. "
                f"Please download it with: livecue --download-model {self.model_id}"
            )

        logger.info("Loading Vosk model from: %s", self.model_path)
        loop = asyncio.get_running_loop()
        # Model loading takes seconds for the larger models
        self.model = await loop.run_in_executor(None, Model, self.model_path)
        self.reset()

        self.audio = AudioCapture(
            sample_rate=self.sample_rate,
            chunk_duration_ms=self.chunk_ms,
            device=self.device,
        )
        self.audio.start()

    async def close(self) -> None:
        if self.audio is not None:
            self.audio.stop()
            self.audio = None
            logger.info("Audio capture stopped")

    async def results(self) -> AsyncIterator[SpeechResult]:
        loop = asyncio.get_running_loop()
        while self.audio is not None and self.audio.running:
            audio = self.audio
            chunk = await loop.run_in_executor(None, audio.get_chunk, 0.05)
            if not chunk:
                continue
            result = await loop.run_in_executor(None, self.process_audio, chunk)
            if result is not None:
                yield result

        if self.recognizer is not None:
            final = self.get_final()
            if final is not None:
                yield final

    def reset(self) -> None:
        """Reset the recognizer state (e.g., after a long pause)."""
        if self.model is None:
            return
        self.recognizer = KaldiRecognizer(self.model, self.sample_rate)
        self.recognizer.SetWords(True)  # Include word-level timing
        self._last_partial = ""

    def process_audio(self, audio_data: bytes) -> SpeechResult | None:
        """
        Process an audio chunk and return a recognition result.

        Args:
            audio_data: Raw audio bytes (16-bit PCM, mono)

        Returns:
            A final result when a speech segment completes, an interim result
            when the partial hypothesis changed, otherwise None
        """
        if self.recognizer is None:
            return None

        if self.recognizer.AcceptWaveform(audio_data):
            self._last_partial = ""
            return self._final_from_json(self.recognizer.Result())

        partial: dict[str, Any] = json.loads(self.recognizer.PartialResult())
        text: str = partial.get("partial", "").strip()
        if not text or self._is_vosk_artifact(text) or text == self._last_partial:
            return None
        self._last_partial = text
        return SpeechResult(text, is_final=False)

    def get_final(self) -> SpeechResult | None:
        """Get any remaining buffered speech as a final result."""
        if self.recognizer is None:
            return None
        return self._final_from_json(self.recognizer.FinalResult())

    def _final_from_json(self, raw: str) -> SpeechResult | None:
        result: dict[str, Any] = json.loads(raw)
        text: str = result.get("text", "").strip()
        if not text or self._is_vosk_artifact(text):
            return None

        words = [
            WordTimestamp(
                word=str(w.get("word", "")),
                start_time=float(w.get("start", 0.0)),
                end_time=float(w.get("end", 0.0)),
                confidence=float(w.get("conf", 1.0)),
            )
            for w in result.get("result", [])
        ]
        confidence = (
            sum(w.confidence for w in words) / len(words) if words else None
        )
        return SpeechResult(text, is_final=True, confidence=confidence, words=words or None)

    @staticmethod
    def get_available_models() -> list[ModelInfo]:
        """Models that `download_model` knows how to fetch."""
        models: list[ModelInfo] = []
        for model_id, info in VoskMicrophoneSource.MODELS.items():
            models.append(ModelInfo(
                id=model_id,
                name=info["name"],
                size_mb=info["size_mb"],
                description=f"Vosk {info['dir']} ({info['size_mb']} MB)",
            ))
        return models

    @staticmethod
    def download_model(
        model_id: str,
        target_dir: str | None = None,
        progress_callback: Callable[[str, int], None] | None = None
    ) -> str:
        """
        Fetch and unpack a Vosk model unless it is already installed.

        The archive is downloaded and unpacked in a staging directory next to
        the target and moved into place only once complete, so an interrupted
        download never leaves a partial model behind.

        Args:
            model_id: Key of MODELS (e.g., "vosk-en-us-small")
            target_dir: Install directory, or None for MODEL_CACHE_DIR
            progress_callback: Called with (stage, percent); stages are
                "downloading", "extracting" and "complete"

        Returns:
            Path of the installed model directory
        """
        info: dict[str, Any] | None = VoskMicrophoneSource.MODELS.get(model_id)
        if info is None:
            known = ", ".join(VoskMicrophoneSource.MODELS)
            raise ValueError(f"Unknown Vosk model '{model_id}' (known: {known})")

        def report(stage: str, percent: int) -> None:
            if progress_callback is not None:
                progress_callback(stage, percent)

        install_root = Path(target_dir) if target_dir else MODEL_CACHE_DIR
        model_path = install_root / info["dir"]
        if model_path.is_dir():
            logger.info("Vosk model %s already installed at %s", model_id, model_path)
            report("complete", 100)
            return str(model_path)

        install_root.mkdir(parents=True, exist_ok=True)
        last_percent = -1

        def on_block(blocks: int, block_size: int, total: int) -> None:
            nonlocal last_percent
            if total <= 0:
                return
            percent = min(100, blocks * block_size * 100 // total)
            if percent != last_percent:
                last_percent = percent
                report("downloading", percent)

        with tempfile.TemporaryDirectory(prefix=".download-", dir=install_root) as staging:
            archive = Path(staging) / f"{info['dir']}.zip"
            logger.info("Downloading Vosk model %s from %s", model_id, info["url"])
            report("downloading", 0)
            urllib.request.urlretrieve(info["url"], str(archive), on_block)

            report("extracting", 0)
            unpacked = Path(staging) / "unpacked"
            with zipfile.ZipFile(archive) as zf:
                zf.extractall(unpacked)
            extracted = unpacked / info["dir"]
            if not extracted.is_dir():
                raise RuntimeError(
                    f"Archive for {model_id} does not contain {info['dir']}/")
            extracted.rename(model_path)

        report("complete", 100)
        logger.info("Vosk model %s installed at %s", model_id, model_path)
        return str(model_path)

    def _get_model_path(self, model_id: str) -> str:
        """Cache location of a known model; anything else is taken as a path."""
        info = self.MODELS.get(model_id)
        if info is None:
            return model_id
        return str(MODEL_CACHE_DIR / info["dir"])

    @staticmethod
    def _is_vosk_artifact(text: str) -> bool:
        """Vosk emits a lone "the" on silence or unusable input."""
        return text.lower() == "the"

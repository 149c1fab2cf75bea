# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Microphone capture for the capture agent.

PortAudio delivers 16-bit mono chunks on its own thread; they are queued
here and pulled by the recognizer from an executor thread. The queue is
bounded so a recognizer that falls behind drops the oldest audio instead of
drifting further and further behind the speaker.
"""

import logging
import queue
from dataclasses import dataclass
from typing import Any

import sounddevice as sd

logger = logging.getLogger(__name__)

# Roughly ten seconds of 100 ms chunks
MAX_QUEUED_CHUNKS: int = 100


@dataclass(frozen=True)
class InputDevice:
    """An audio device that can record."""
    index: int
    name: str
    channels: int
    default_sample_rate: float


class AudioCapture:
    """Records fixed-size chunks from one input device."""

    def __init__(
        self,
        sample_rate: int = 16000,
        chunk_duration_ms: int = 100,
        device: int | None = None,
        max_chunks: int = MAX_QUEUED_CHUNKS
    ) -> None:
        """
        Args:
            sample_rate: Sample rate in Hz (Vosk models expect 16000)
            chunk_duration_ms: Length of each chunk in milliseconds
            device: Input device index, or None for the system default
            max_chunks: Chunks held before the oldest is discarded
        """
        self.sample_rate: int = sample_rate
        self.chunk_duration_ms: int = chunk_duration_ms
        self.chunk_size: int = int(sample_rate * chunk_duration_ms / 1000)
        self.device: int | None = device
        self.dropped_chunks: int = 0
        self.running: bool = False
        self.stream: sd.RawInputStream | None = None
        self._chunks: queue.Queue[bytes] = queue.Queue(maxsize=max_chunks)

    def _on_audio(self, indata: Any, frames: int, time: Any, status: sd.CallbackFlags) -> None:
        # PortAudio thread
        if status:
            logger.warning("Audio input status: %s", status)
        chunk = bytes(indata)
        while True:
            try:
                self._chunks.put_nowait(chunk)
                return
            except queue.Full:
                try:
                    self._chunks.get_nowait()
                    self.dropped_chunks += 1
                except queue.Empty:
                    pass

    def start(self) -> None:
        """Open the input stream. No-op if already recording."""
        if self.running:
            return
        self.stream = sd.RawInputStream(
            samplerate=self.sample_rate,
            blocksize=self.chunk_size,
            device=self.device,
            dtype="int16",
            channels=1,
            callback=self._on_audio,
        )
        self.stream.start()
        self.running = True
        logger.info("Recording from device %s at %d Hz in %d ms chunks",
                    "default" if self.device is None else self.device,
                    self.sample_rate, self.chunk_duration_ms)

    def stop(self) -> None:
        """Close the input stream and discard queued audio."""
        self.running = False
        stream, self.stream = self.stream, None
        if stream is not None:
            stream.stop()
            stream.close()
        while not self._chunks.empty():
            self._chunks.get_nowait()
        if self.dropped_chunks:
            logger.warning("Recognizer fell behind: %d audio chunks dropped",
                           self.dropped_chunks)

    def get_chunk(self, timeout: float = 0.5) -> bytes | None:
        """Next recorded chunk, or None if nothing arrived within `timeout` seconds."""
        try:
            return self._chunks.get(timeout=timeout)
        except queue.Empty:
            return None


def input_devices() -> list[InputDevice]:
    """All devices with at least one input channel."""
    devices: list[InputDevice] = []
    for index, info in enumerate(sd.query_devices()):
        dev: dict[str, Any] = dict(info)
        channels = int(dev.get("max_input_channels", 0))
        if channels > 0:
            devices.append(InputDevice(
                index=index,
                name=str(dev.get("name", "Unknown")),
                channels=channels,
                default_sample_rate=float(dev.get("default_samplerate", 0.0)),
            ))
    return devices


def list_devices() -> list[InputDevice]:
    """Print the input devices usable with --device."""
    devices = input_devices()
    if not devices:
        print("No audio input devices found")
        return devices
    print("Audio input devices:")
    for dev in devices:
        print(f"  [{dev.index}] {dev.name} "
              f"({dev.channels} ch, {dev.default_sample_rate:.0f} Hz)")
    return devices

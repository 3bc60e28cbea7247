"""Test doubles shared across the suite."""

import asyncio
from typing import List, Optional, Sequence

from pipeline.cancellation import CancelToken, check
from pipeline.transcoder import TranscodeOptions, TranscodeResult, Transcoder


class FakeTranscoder(Transcoder):
    """Stands in for ffmpeg: deterministic bytes, scripted durations, call counters."""

    def __init__(self, durations: Optional[List[float]] = None, measured_duration: float = 7.0):
        super().__init__(ffmpeg_bin="ffmpeg", ffprobe_bin="ffprobe", bitrate="64k")
        self.durations = list(durations or [])
        self.measured_duration = measured_duration
        self.encode_calls = []
        self.concat_calls = []
        self.measure_calls = 0
        # When set, transcode signals `entered` and waits for the gate to open
        self.gate: Optional[asyncio.Event] = None
        self.entered: Optional[asyncio.Event] = None

    async def transcode(
        self,
        input_bytes: bytes,
        source_hint: str,
        target_format: str,
        options: TranscodeOptions = None,
        cancel: Optional[CancelToken] = None
    ) -> TranscodeResult:
        if self.gate is not None:
            self.entered.set()
            await self.gate.wait()
        check(cancel)
        self.encode_calls.append((bytes(input_bytes), target_format, options))
        duration = self.durations.pop(0) if self.durations else float(len(input_bytes))
        return TranscodeResult(output_bytes=target_format.encode() + b":" + bytes(input_bytes), duration_seconds=duration)

    async def measure_duration(self, source, cancel: Optional[CancelToken] = None, source_hint: str = None) -> float:
        check(cancel)
        self.measure_calls += 1
        return self.measured_duration

    async def concatenate(
        self,
        inputs: Sequence[bytes],
        target_format: str,
        chapter_metadata: Optional[str] = None,
        cancel: Optional[CancelToken] = None
    ) -> TranscodeResult:
        check(cancel)
        self.concat_calls.append((list(inputs), target_format, chapter_metadata))
        return TranscodeResult(output_bytes=b"|".join(inputs), duration_seconds=float(len(inputs)))

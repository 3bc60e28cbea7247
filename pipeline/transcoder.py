"""
Transcoder - ffmpeg/ffprobe wrapper for chapter encoding and book concatenation.

Every call runs inside its own temporary workspace which is removed on
success, failure and cancellation alike. Child processes are killed when the
CancelToken fires or the awaiting task is cancelled.
"""

import asyncio
import logging
import math
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

import aiofiles

from config import settings
from errors import Cancelled, TranscodeFailed
from pipeline.cancellation import CancelToken, check

logger = logging.getLogger(__name__)

MIN_SPEED = 0.5
MAX_SPEED = 3.0

STDERR_TAIL = 2000


@dataclass
class TranscodeOptions:
    speed: float = 1.0
    title: Optional[str] = None


@dataclass
class TranscodeResult:
    output_bytes: bytes
    duration_seconds: float


def build_atempo_filter(speed: float) -> str:
    """atempo only accepts 0.5..2.0 per pass, so chain two passes above 2x."""
    clamped = max(MIN_SPEED, min(speed, MAX_SPEED))
    if clamped <= 2.0:
        return f"atempo={clamped:.3f}"
    return f"atempo=2.0,atempo={clamped / 2.0:.3f}"


def encoding_args(target_format: str, bitrate: str) -> List[str]:
    if target_format == "mp3":
        return ["-c:a", "libmp3lame", "-b:a", bitrate]
    return ["-c:a", "aac", "-b:a", bitrate, "-f", "mp4"]


def _extension(source_hint: Optional[str]) -> str:
    cleaned = re.sub(r"[^a-z0-9]", "", (source_hint or "").lower())
    return cleaned or "bin"


def _escape_concat_path(path: Path) -> str:
    return str(path).replace("'", "'\\''")


class Transcoder:
    """Media transcode adapter backed by the ffmpeg command line tools."""

    def __init__(
        self,
        ffmpeg_bin: str = None,
        ffprobe_bin: str = None,
        bitrate: str = None
    ):
        self.ffmpeg_bin = ffmpeg_bin or settings.ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin or settings.ffprobe_bin
        self.bitrate = bitrate or settings.audio_bitrate

    async def run_process(
        self,
        args: Sequence[str],
        operation: str,
        cancel: Optional[CancelToken] = None
    ) -> bytes:
        """Run a command to completion and return stdout.

        Raises Cancelled if the token fires first (the child is killed),
        TranscodeFailed on spawn errors or a non-zero exit.
        """
        check(cancel)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise TranscodeFailed(operation, f"could not start {args[0]}: {e}") from e

        communicate = asyncio.ensure_future(process.communicate())
        waiters = [communicate]
        if cancel is not None:
            waiters.append(asyncio.ensure_future(cancel.wait()))

        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if communicate not in done:
                logger.info(f"{operation} cancelled, killing pid {process.pid}")
                raise Cancelled()
            stdout, stderr = communicate.result()
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        if process.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace")[-STDERR_TAIL:]
            logger.error(f"{operation} failed with exit code {process.returncode}: {tail}")
            raise TranscodeFailed(operation, tail)
        return stdout

    async def measure_duration(
        self,
        source: Union[bytes, Path],
        cancel: Optional[CancelToken] = None,
        source_hint: str = None
    ) -> float:
        """Duration in seconds of an audio file or in-memory audio bytes."""
        if isinstance(source, (bytes, bytearray)):
            with tempfile.TemporaryDirectory(prefix="openreader-measure-") as workspace:
                path = Path(workspace) / f"input.{_extension(source_hint)}"
                async with aiofiles.open(path, "wb") as f:
                    await f.write(source)
                return await self._measure_path(path, cancel)
        return await self._measure_path(Path(source), cancel)

    async def _measure_path(self, path: Path, cancel: Optional[CancelToken]) -> float:
        stdout = await self.run_process(
            [
                self.ffprobe_bin,
                "-i", str(path),
                "-show_entries", "format=duration",
                "-v", "quiet",
                "-of", "csv=p=0"
            ],
            "measure duration",
            cancel
        )
        text = stdout.decode("utf-8", errors="replace").strip()
        try:
            duration = float(text.splitlines()[0]) if text else math.nan
        except ValueError:
            duration = math.nan
        if not math.isfinite(duration) or duration < 0:
            raise TranscodeFailed("measure duration", f"unreadable duration {text!r} for {path.name}")
        return duration

    async def transcode(
        self,
        input_bytes: bytes,
        source_hint: str,
        target_format: str,
        options: TranscodeOptions = None,
        cancel: Optional[CancelToken] = None
    ) -> TranscodeResult:
        """Encode one chapter to the target container and measure it."""
        options = options or TranscodeOptions()
        check(cancel)

        with tempfile.TemporaryDirectory(prefix="openreader-encode-") as workspace:
            input_path = Path(workspace) / f"input.{_extension(source_hint)}"
            output_path = Path(workspace) / f"output.{target_format}"
            async with aiofiles.open(input_path, "wb") as f:
                await f.write(input_bytes)

            args = [self.ffmpeg_bin, "-y", "-i", str(input_path)]
            if options.speed is not None and options.speed != 1:
                args += ["-filter:a", build_atempo_filter(options.speed)]
            args += encoding_args(target_format, self.bitrate)
            if options.title is not None:
                args += ["-metadata", f"title={options.title}"]
            args.append(str(output_path))

            await self.run_process(args, f"encode {target_format}", cancel)
            duration = await self._measure_path(output_path, cancel)

            async with aiofiles.open(output_path, "rb") as f:
                output_bytes = await f.read()

        logger.debug(f"Encoded {len(input_bytes)} bytes to {len(output_bytes)} bytes of {target_format} ({duration:.2f}s)")
        return TranscodeResult(output_bytes=output_bytes, duration_seconds=duration)

    async def concatenate(
        self,
        inputs: Sequence[bytes],
        target_format: str,
        chapter_metadata: Optional[str] = None,
        cancel: Optional[CancelToken] = None
    ) -> TranscodeResult:
        """Join chapter objects in the given order into one deliverable.

        MP3 output is re-encoded through libmp3lame to rebuild headers and
        duration. M4B output maps the FFMETADATA document for chapter marks.
        """
        if not inputs:
            raise TranscodeFailed("concatenate", "no inputs")
        check(cancel)

        with tempfile.TemporaryDirectory(prefix="openreader-concat-") as workspace:
            root = Path(workspace)
            list_lines = []
            for position, data in enumerate(inputs):
                check(cancel)
                part_path = root / f"part{position:05d}.{target_format}"
                async with aiofiles.open(part_path, "wb") as f:
                    await f.write(data)
                list_lines.append(f"file '{_escape_concat_path(part_path)}'")

            list_path = root / "list.txt"
            list_path.write_text("\n".join(list_lines) + "\n", encoding="utf-8")
            output_path = root / f"complete.{target_format}"

            args = [self.ffmpeg_bin, "-y", "-f", "concat", "-safe", "0", "-i", str(list_path)]
            if target_format != "mp3" and chapter_metadata:
                metadata_path = root / "chapters.meta"
                metadata_path.write_text(chapter_metadata, encoding="utf-8")
                args += ["-i", str(metadata_path), "-map_metadata", "1"]
            args += encoding_args(target_format, self.bitrate)
            args.append(str(output_path))

            await self.run_process(args, f"concatenate {target_format}", cancel)
            duration = await self._measure_path(output_path, cancel)

            async with aiofiles.open(output_path, "rb") as f:
                output_bytes = await f.read()

        logger.info(f"Concatenated {len(inputs)} chapters into {len(output_bytes)} bytes of {target_format}")
        return TranscodeResult(output_bytes=output_bytes, duration_seconds=duration)

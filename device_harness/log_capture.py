"""Windowed capture of growing system logs and streamed device logs."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from .command_runner import resolve_tool, terminate_process

logger = logging.getLogger(__name__)

# Extra bytes read past the logical end to absorb writers that flush late.
TRAILING_SLACK = 1024
COPY_CHUNK_SIZE = 64 * 1024


@dataclass
class CapturedLogWindow:
    """Byte range of a source log owned by one capture."""

    source: Path
    destination: Path
    start_offset: int = 0
    end_offset: Optional[int] = None
    captured_bytes: int = 0

    def close(self, end_offset: int) -> None:
        # The logical end is fixed by the first stop only.
        if self.end_offset is None:
            self.end_offset = end_offset


def _file_size(path: Path) -> Optional[int]:
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return None


class WindowedLogCapture:
    """Extracts the bytes a log gained between `start()` and `stop()`.

    The source is written by another process; it is only ever opened for
    reading so appenders are never blocked.
    """

    def __init__(self, source: Path, destination: Path, entire_file: bool = False) -> None:
        self.source = Path(source)
        self.destination = Path(destination)
        self.entire_file = entire_file
        self.window: Optional[CapturedLogWindow] = None

    def start(self) -> None:
        if self.entire_file:
            return
        start = _file_size(self.source) or 0
        self.window = CapturedLogWindow(self.source, self.destination, start_offset=start)
        logger.debug(f"Capturing {self.source} from offset {start}")

    def stop(self) -> Path:
        self.destination.parent.mkdir(parents=True, exist_ok=True)
        current = _file_size(self.source)
        window = self.window

        if window is not None and window.end_offset is not None:
            if current is None or current < window.start_offset:
                # Rotated or removed after the first stop; the window is final.
                logger.warning(
                    f"{self.source} was rotated after the capture stopped, "
                    f"keeping the {window.captured_bytes} captured bytes"
                )
                return self.destination

        if current is None:
            self.destination.write_text(
                f"Could not capture the file '{self.source}' because it doesn't exist.",
                encoding="utf-8",
            )
            return self.destination

        if self.entire_file or window is None:
            self._copy_entire_file()
            return self.destination

        if current < window.start_offset:
            logger.warning(
                f"{self.source} shrank below the capture start "
                f"({current} < {window.start_offset}), copying the entire file"
            )
            self._copy_entire_file()
            window.start_offset = 0
            window.captured_bytes = current
            window.close(current)
            return self.destination

        window.close(current)
        limit = min(current, window.end_offset + TRAILING_SLACK)
        begin = window.start_offset + window.captured_bytes
        if limit <= begin:
            if not self.destination.exists():
                self.destination.touch()
            return self.destination

        copied = self._copy_range(begin, limit - begin, append=window.captured_bytes > 0)
        window.captured_bytes += copied
        logger.debug(
            f"Captured {window.captured_bytes} bytes of {self.source} into {self.destination}"
        )
        return self.destination

    def _copy_entire_file(self) -> None:
        shutil.copyfile(self.source, self.destination)

    def _copy_range(self, offset: int, length: int, append: bool) -> int:
        copied = 0
        with open(self.source, "rb") as src, open(
            self.destination, "ab" if append else "wb"
        ) as dst:
            src.seek(offset)
            while copied < length:
                chunk = src.read(min(COPY_CHUNK_SIZE, length - copied))
                if not chunk:
                    break
                dst.write(chunk)
                copied += len(chunk)
        return copied


class DeviceLogCapturer:
    """Streams a device log command (e.g. ``adb logcat``) into a file."""

    def __init__(self, argv: Sequence[str], output_path: Path) -> None:
        self.argv = list(argv)
        self.output_path = Path(output_path)
        self.lines_written = 0
        self._process: Optional[asyncio.subprocess.Process] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        executable = resolve_tool(self.argv[0])
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        self._process = await asyncio.create_subprocess_exec(
            executable,
            *self.argv[1:],
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        self._task = asyncio.create_task(self._stream(self._process))
        logger.info(f"Started device log capture into {self.output_path}")

    async def _stream(self, process: asyncio.subprocess.Process) -> None:
        with open(self.output_path, "w", encoding="utf-8") as log_file:
            while process.stdout is not None:
                line = await process.stdout.readline()
                if not line:
                    break
                log_file.write(line.decode("utf-8", errors="replace"))
                log_file.flush()
                self.lines_written += 1

    async def stop(self) -> None:
        if self._process is None:
            return
        await terminate_process(self._process)

        if self._task is not None:
            self._task.cancel()
            try:
                await asyncio.wait_for(self._task, timeout=5.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
        logger.info(
            f"Stopped device log capture, {self.lines_written} lines in {self.output_path}"
        )
        self._process = None
        self._task = None

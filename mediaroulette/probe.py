"""
Running ffprobe/ffmpeg and parsing what they print.
"""
import json
import math
import os
import re
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from mediaroulette.caches import LoudnessInfo
from mediaroulette.logging_config import (
    get_logger,
    DecodeTimeoutError,
    ParseFailureError,
    ProcessError,
    ScanCancelledError,
    ToolUnavailableError,
)

logger = get_logger('probe')

# External command cache
_command_cache: Dict[str, str] = {}

_MEAN_VOLUME_RE = re.compile(r"mean_volume:\s*(\S+)\s*dB")
_MAX_VOLUME_RE = re.compile(r"max_volume:\s*(\S+)\s*dB")

# ffmpeg exits non-zero with one of these when -vn leaves nothing to decode
_NO_AUDIO_MARKERS = (
    "does not contain any stream",
    "matches no streams",
)


def find_command(cmd: str) -> Optional[str]:
    """Find an external command in PATH with caching.

    Only hits are cached, so a tool installed while running is found on
    the next lookup.

    Args:
        cmd: Command name or path

    Returns:
        Path to command if found, None otherwise
    """
    if cmd in _command_cache:
        return _command_cache[cmd]
    result = shutil.which(cmd)
    if result is not None:
        _command_cache[cmd] = result
    return result


def clear_command_cache() -> None:
    _command_cache.clear()


@dataclass
class ToolResult:
    """Outcome of one tool invocation."""
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False


class ToolRunner:
    """Runs a command with a timeout, killing it on timeout or cancellation.

    The child gets its own session so the whole process group can be
    killed.
    """

    def __init__(self, poll_interval: float = 0.1):
        self.poll_interval = poll_interval

    def resolve(self, tool: str) -> Optional[str]:
        """Locate a tool, None if it is not installed."""
        return find_command(tool)

    def run(self, args: Sequence[str], timeout: float, cancel=None) -> ToolResult:
        """Run a command and collect its output.

        Args:
            args: Command line
            timeout: Seconds before the process is killed
            cancel: Optional object with an ``is_cancelled`` property,
                polled while waiting

        Raises:
            ToolUnavailableError: If the executable cannot be started
        """
        try:
            process = subprocess.Popen(
                list(args),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ToolUnavailableError(f"{args[0]} not found: {e}") from e

        deadline = time.monotonic() + timeout
        while True:
            if cancel is not None and cancel.is_cancelled:
                self._kill(process)
                return ToolResult(returncode=None, cancelled=True)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._kill(process)
                return ToolResult(returncode=None, timed_out=True)

            try:
                stdout, stderr = process.communicate(timeout=min(self.poll_interval, remaining))
                return ToolResult(returncode=process.returncode, stdout=stdout or "", stderr=stderr or "")
            except subprocess.TimeoutExpired:
                continue

    @staticmethod
    def _kill(process: subprocess.Popen) -> None:
        try:
            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            process.kill()
        try:
            process.communicate(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {process.pid} did not exit after SIGKILL")
        logger.debug(f"Killed process {process.pid}")


def duration_command(ffprobe: str, path: str) -> List[str]:
    return [
        ffprobe,
        "-v", "error",
        "-select_streams", "v:0",
        "-show_entries", "format=duration:stream=duration",
        "-of", "json",
        "-i", path,
    ]


def loudness_command(ffmpeg: str, path: str) -> List[str]:
    return [
        ffmpeg,
        "-hide_banner",
        "-nostats",
        "-vn", "-sn",
        "-i", path,
        "-af", "volumedetect",
        "-f", "null",
        "-",
    ]


def _positive_seconds(raw) -> Optional[float]:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if math.isfinite(value) and value > 0:
        return value
    return None


def parse_duration_output(output: str, path: str = "") -> Optional[int]:
    """Extract a duration from ffprobe JSON output.

    The container duration wins over the first stream's. Positive values
    under one second round up to 1.

    Returns:
        Whole seconds, or None when no positive duration is reported

    Raises:
        ParseFailureError: If the output is not ffprobe JSON
    """
    try:
        data = json.loads(output)
    except ValueError as e:
        raise ParseFailureError(path, f"Invalid ffprobe output ({e})") from e
    if not isinstance(data, dict):
        raise ParseFailureError(path, "Invalid ffprobe output")

    fmt = data.get("format")
    seconds = _positive_seconds(fmt.get("duration")) if isinstance(fmt, dict) else None
    if seconds is None:
        streams = data.get("streams")
        if isinstance(streams, list) and streams and isinstance(streams[0], dict):
            seconds = _positive_seconds(streams[0].get("duration"))
    if seconds is None:
        return None
    return max(1, int(seconds))


def reports_no_audio(output: str) -> bool:
    """Whether ffmpeg diagnostics say the input had no audio stream."""
    return any(marker in output for marker in _NO_AUDIO_MARKERS)


def parse_loudness_output(output: str, path: str = "") -> LoudnessInfo:
    """Extract mean and peak volume from volumedetect diagnostics.

    Returns:
        The measured loudness, or LoudnessInfo.no_audio() when ffmpeg
        found no audio stream

    Raises:
        ParseFailureError: Unless both values are present and finite
    """
    if reports_no_audio(output):
        return LoudnessInfo.no_audio()
    mean = _MEAN_VOLUME_RE.search(output)
    peak = _MAX_VOLUME_RE.search(output)
    if not mean or not peak:
        raise ParseFailureError(path, "No volumedetect result")
    try:
        mean_db = float(mean.group(1))
        peak_db = float(peak.group(1))
    except ValueError as e:
        raise ParseFailureError(path, f"Bad volumedetect value ({e})") from e
    if not (math.isfinite(mean_db) and math.isfinite(peak_db)):
        raise ParseFailureError(path, "Silent or empty audio")
    return LoudnessInfo(mean_volume_db=mean_db, peak_db=peak_db)


def invoke(
    runner: ToolRunner,
    args: Sequence[str],
    path: str,
    timeout: float,
    cancel=None,
    accept: Optional[Callable[[ToolResult], bool]] = None,
) -> ToolResult:
    """Run a tool for one file, mapping failures onto per-file errors.

    Args:
        accept: Optional check letting a non-zero exit through to the
            caller's parser, e.g. ffmpeg refusing a file without audio

    Raises:
        ScanCancelledError: If cancelled while the tool was running
        DecodeTimeoutError: If the tool hit the timeout
        ProcessError: If the tool exited with an error
        ToolUnavailableError: If the tool cannot be started
    """
    result = runner.run(args, timeout, cancel)
    if result.cancelled:
        raise ScanCancelledError(f"Cancelled while probing {path}")
    if result.timed_out:
        raise DecodeTimeoutError(path, f"Timed out after {timeout:g}s")
    if result.returncode != 0 and not (accept is not None and accept(result)):
        detail = result.stderr.strip().splitlines()[-1] if result.stderr.strip() else "no output"
        raise ProcessError(path, f"Exit code {result.returncode} ({detail})")
    return result

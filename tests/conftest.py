import json
import os
import sys
import tempfile
import threading
import time
import pytest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from mediaroulette.config import ConfigManager
from mediaroulette.probe import ToolResult


class FakeRunner:
    """Stands in for ToolRunner, answering like ffprobe/ffmpeg would.

    Outputs are chosen by file name. Every invocation is recorded.
    """

    def __init__(self, durations=None, loudness=None, failures=None, available=True, block_after=None):
        self.durations = durations or {}
        self.loudness = loudness or {}
        self.failures = failures or {}
        self.available = available
        self.block_after = block_after
        self.calls = []
        self._lock = threading.Lock()

    def resolve(self, tool):
        return tool if self.available else None

    def call_count(self):
        with self._lock:
            return len(self.calls)

    def run(self, args, timeout, cancel=None):
        path = args[args.index("-i") + 1]
        with self._lock:
            self.calls.append(path)
            call_number = len(self.calls)

        if self.block_after is not None and call_number > self.block_after:
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                if cancel is not None and cancel.is_cancelled:
                    return ToolResult(returncode=None, cancelled=True)
                time.sleep(0.01)
            return ToolResult(returncode=None, timed_out=True)

        name = os.path.basename(path)
        failure = self.failures.get(name)
        if failure == "timeout":
            return ToolResult(returncode=None, timed_out=True)
        if failure == "error":
            return ToolResult(returncode=1, stderr="Invalid data found when processing input\n")
        if failure == "no_audio":
            return ToolResult(returncode=1, stderr="Output file #0 does not contain any stream\n")
        if failure == "garbage":
            return ToolResult(returncode=0, stdout="not json", stderr="")

        if "volumedetect" in args:
            mean, peak = self.loudness.get(name, (-20.0, -1.5))
            stderr = (
                "Input #0, mov,mp4,m4a,3gp,3g2,mj2, from 'x':\n"
                f"[Parsed_volumedetect_0 @ 0x55d0] mean_volume: {mean} dB\n"
                f"[Parsed_volumedetect_0 @ 0x55d0] max_volume: {peak} dB\n"
            )
            return ToolResult(returncode=0, stderr=stderr)

        seconds = self.durations.get(name, 60.0)
        document = {"programs": [], "streams": [{"duration": str(seconds)}], "format": {"duration": str(seconds)}}
        return ToolResult(returncode=0, stdout=json.dumps(document))


@pytest.fixture
def temp_media_dir():
    """Create a temporary media directory with test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        media_dir = Path(tmpdir) / "media"
        media_dir.mkdir()

        (media_dir / "subdir").mkdir()

        (media_dir / "clip1.mp4").touch()
        (media_dir / "clip2.mkv").touch()
        (media_dir / "photo1.jpg").touch()
        (media_dir / "notes.txt").touch()

        (media_dir / "subdir" / "nested.mov").touch()

        yield media_dir


@pytest.fixture
def temp_data_dir():
    """Create a temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        data_dir = Path(tmpdir) / "data"
        data_dir.mkdir()
        yield data_dir


@pytest.fixture
def config_manager(temp_data_dir):
    """Config manager writing into the temporary data directory."""
    manager = ConfigManager(temp_data_dir / "config.json")
    manager.config.data_directory = str(temp_data_dir)
    manager.config.scan_workers = 2
    manager.config.backup_enabled = False
    return manager


@pytest.fixture
def fake_runner():
    return FakeRunner()

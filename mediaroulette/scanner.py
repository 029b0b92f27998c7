"""
Background scans that fill the duration and loudness caches.

A scan enumerates a root folder, skips files the cache already knows and
runs the external tool for the rest on a small thread pool, saving the
cache every few dozen results so an interrupted scan resumes where it
stopped.
"""
import os
import threading
import concurrent.futures
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Set

from mediaroulette.caches import DurationCache, LoudnessCache, PathCache
from mediaroulette.config import default_scan_workers
from mediaroulette.library import walk_directory
from mediaroulette.logging_config import (
    get_logger,
    DirectoryUnavailableError,
    PerFileFailure,
    PersistenceError,
    ScanCancelledError,
    ToolUnavailableError,
)
from mediaroulette.models import VIDEO_EXTENSIONS
from mediaroulette.probe import (
    ToolResult,
    ToolRunner,
    duration_command,
    invoke,
    loudness_command,
    parse_duration_output,
    parse_loudness_output,
    reports_no_audio,
)

logger = get_logger('scanner')

DEFAULT_CHECKPOINT_BATCH = 50
MAX_LOUDNESS_WORKERS = 4

RootProvider = Callable[[], Optional[str]]
ProgressSink = Callable[[int, int, int], None]
StatusSink = Callable[[str], None]
DirectoryEnumerator = Callable[[str], Iterable[str]]


class ScanState(Enum):
    IDLE = "Idle"
    SCANNING = "Scanning"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


class CancellationContext:
    """Cooperative cancellation signal shared by one scan session."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ScanCancelledError("Scan cancelled")


@dataclass
class ScanProfile:
    """What distinguishes one kind of scan from another."""
    name: str
    title: str
    cache: PathCache
    tool: str
    timeout: float
    workers: int
    build_command: Callable[[str, str], List[str]]
    parse: Callable[[ToolResult, str], Optional[Any]]
    extensions: Set[str]
    accept_failure: Optional[Callable[[ToolResult], bool]] = None


@dataclass
class ScanResult:
    """Summary of a finished scan session.

    Attributes:
        total: Media files found under the root
        already_cached: Files skipped because the cache knew them
        to_scan: Files handed to the workers
        processed: Files the workers finished with, whatever the outcome
        committed: New cache entries
        errors: Per-file failures
        skipped: Files that vanished before their turn
    """
    kind: str
    root: Optional[str]
    state: ScanState = ScanState.SCANNING
    total: int = 0
    already_cached: int = 0
    to_scan: int = 0
    processed: int = 0
    committed: int = 0
    errors: int = 0
    skipped: int = 0
    message: str = ""


class ScanSession:
    """Handle on a running or finished scan."""

    def __init__(self, profile: ScanProfile, root: str):
        self.profile = profile
        self.root = root
        self.cancellation = CancellationContext()
        self.state = ScanState.SCANNING
        self.result: Optional[ScanResult] = None
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def kind(self) -> str:
        return self.profile.name

    @property
    def is_running(self) -> bool:
        return not self._done.is_set()

    def cancel(self) -> None:
        if self.is_running:
            logger.info(f"Cancelling {self.kind} scan of {self.root}")
        self.cancellation.cancel()

    def wait(self, timeout: Optional[float] = None) -> Optional[ScanResult]:
        """Block until the session ends. Returns None on timeout."""
        if not self._done.wait(timeout):
            return None
        return self.result

    def _finish(self, result: ScanResult) -> None:
        self.result = result
        self.state = result.state
        self._done.set()


class ScanOrchestrator:
    """Runs duration and loudness scans, one session at a time."""

    def __init__(
        self,
        duration_cache: DurationCache,
        loudness_cache: LoudnessCache,
        runner: Optional[ToolRunner] = None,
        ffprobe_path: str = "ffprobe",
        ffmpeg_path: str = "ffmpeg",
        workers: Optional[int] = None,
        checkpoint_batch_size: int = DEFAULT_CHECKPOINT_BATCH,
        duration_timeout: float = 10.0,
        loudness_timeout: float = 300.0,
        enumerator: Optional[DirectoryEnumerator] = None,
        root_provider: Optional[RootProvider] = None,
        progress_sink: Optional[ProgressSink] = None,
        status_sink: Optional[StatusSink] = None,
        on_complete: Optional[Callable[[ScanResult], None]] = None,
    ):
        self.duration_cache = duration_cache
        self.loudness_cache = loudness_cache
        self.runner = runner or ToolRunner()
        self.ffprobe_path = ffprobe_path
        self.ffmpeg_path = ffmpeg_path
        self.workers = workers if workers and workers > 0 else default_scan_workers()
        self.checkpoint_batch_size = max(1, checkpoint_batch_size)
        self.duration_timeout = duration_timeout
        self.loudness_timeout = loudness_timeout
        self.enumerator = enumerator or walk_directory
        self.root_provider = root_provider
        self.progress_sink = progress_sink
        self.status_sink = status_sink
        self.on_complete = on_complete

        self._slot_lock = threading.Lock()
        self._session: Optional[ScanSession] = None
        self.last_result: Optional[ScanResult] = None

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------
    def duration_profile(self) -> ScanProfile:
        return ScanProfile(
            name="duration",
            title="Duration",
            cache=self.duration_cache,
            tool=self.ffprobe_path,
            timeout=self.duration_timeout,
            workers=self.workers,
            build_command=duration_command,
            parse=lambda result, path: parse_duration_output(result.stdout, path),
            extensions=VIDEO_EXTENSIONS,
        )

    def loudness_profile(self) -> ScanProfile:
        return ScanProfile(
            name="loudness",
            title="Loudness",
            cache=self.loudness_cache,
            tool=self.ffmpeg_path,
            timeout=self.loudness_timeout,
            workers=min(self.workers, MAX_LOUDNESS_WORKERS),
            build_command=loudness_command,
            parse=lambda result, path: parse_loudness_output(result.stderr, path),
            extensions=VIDEO_EXTENSIONS,
            accept_failure=lambda result: reports_no_audio(result.stderr),
        )

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------
    @property
    def is_scanning(self) -> bool:
        with self._slot_lock:
            return self._session is not None

    @property
    def current_session(self) -> Optional[ScanSession]:
        with self._slot_lock:
            return self._session

    def start_duration_scan(self, root: Optional[str] = None) -> Optional[ScanSession]:
        """Start a duration scan in the background.

        Returns:
            The new session, or None if a scan is already running or there
            is no folder to scan
        """
        return self._start(self.duration_profile(), root)

    def start_loudness_scan(self, root: Optional[str] = None) -> Optional[ScanSession]:
        """Start a loudness scan in the background. See start_duration_scan."""
        return self._start(self.loudness_profile(), root)

    def cancel(self) -> bool:
        """Cancel the running session. Returns False when idle."""
        session = self.current_session
        if session is None:
            return False
        session.cancel()
        return True

    def _start(self, profile: ScanProfile, root: Optional[str]) -> Optional[ScanSession]:
        if self.is_scanning:
            logger.info(f"Scan already running, ignoring {profile.name} scan request")
            return None

        if root is None and self.root_provider is not None:
            root = self.root_provider()
        if not root:
            logger.info(f"No folder to scan for {profile.name}")
            self._status("No folder selected")
            return None

        with self._slot_lock:
            if self._session is not None:
                logger.info(f"Scan already running, ignoring {profile.name} scan request")
                return None
            session = ScanSession(profile, os.path.abspath(root))
            self._session = session

        logger.info(f"Starting {profile.name} scan of {session.root} with {profile.workers} workers")
        thread = threading.Thread(
            target=self._run_session,
            args=(session,),
            name=f"{profile.name}-scan",
            daemon=True,
        )
        session._thread = thread
        thread.start()
        return session

    # ------------------------------------------------------------------
    # Session body
    # ------------------------------------------------------------------
    def _run_session(self, session: ScanSession) -> None:
        profile = session.profile
        result = self._execute(session)
        try:
            try:
                profile.cache.save()
            except PersistenceError as e:
                logger.error(f"Final {profile.name} cache save failed: {e}")
            if self.on_complete is not None:
                self.on_complete(result)
        finally:
            with self._slot_lock:
                self._session = None
            self.last_result = result
            logger.info(f"{profile.title} scan {result.state.value.lower()}: {result.message}")
            self._status(result.message)
            session._finish(result)

    def _execute(self, session: ScanSession) -> ScanResult:
        profile = session.profile
        result = ScanResult(kind=profile.name, root=session.root)
        try:
            tool = self.runner.resolve(profile.tool)
            if tool is None:
                raise ToolUnavailableError(f"{os.path.basename(profile.tool)} not found")

            files = self._enumerate(session.root, profile.extensions)
            cached, to_scan = profile.cache.partition(files)
            result.total = len(files)
            result.already_cached = len(cached)
            result.to_scan = len(to_scan)

            self._status(
                f"Scanning {profile.name}… ({len(cached)} already cached, {len(to_scan)} to scan)"
            )
            self._progress(0, len(to_scan), 0)

            if not to_scan:
                result.state = ScanState.COMPLETED
                result.message = f"Ready ({len(files)} files, all cached)"
                return result

            tool_lost = self._scan_files(session, tool, to_scan, result)
            if tool_lost:
                raise ToolUnavailableError(f"{os.path.basename(profile.tool)} not found")

            if session.cancellation.is_cancelled:
                result.state = ScanState.CANCELLED
                result.message = (
                    f"{profile.title} scan cancelled after {result.processed} of {len(to_scan)} files"
                    f"{self._error_suffix(result.errors)}"
                )
            else:
                result.state = ScanState.COMPLETED
                result.message = (
                    f"{profile.title} scan complete: {result.committed} of {len(to_scan)} files"
                    f"{self._error_suffix(result.errors)}"
                )
        except ToolUnavailableError:
            result.state = ScanState.FAILED
            result.message = (
                f"{profile.title} scan unavailable: {os.path.basename(profile.tool)} not found"
            )
        except DirectoryUnavailableError as e:
            result.state = ScanState.FAILED
            result.message = f"Error scanning folder: {e}"
        except Exception as e:
            logger.exception(f"{profile.title} scan crashed")
            result.state = ScanState.FAILED
            result.message = f"Error scanning folder: {e}"
        return result

    def _enumerate(self, root: str, extensions: Set[str]) -> List[str]:
        if not os.path.isdir(root):
            raise DirectoryUnavailableError(f"Directory not found: {root}")
        try:
            paths = self.enumerator(root)
            return [p for p in paths if os.path.splitext(p)[1].lower() in extensions]
        except OSError as e:
            raise DirectoryUnavailableError(f"Cannot list {root}: {e}") from e

    def _scan_one(self, session: ScanSession, tool: str, path: str) -> str:
        profile = session.profile
        session.cancellation.raise_if_cancelled()
        if not os.path.isfile(path):
            return "skipped"
        tool_result = invoke(
            self.runner,
            profile.build_command(tool, path),
            path,
            profile.timeout,
            session.cancellation,
            accept=profile.accept_failure,
        )
        value = profile.parse(tool_result, path)
        if value is None:
            logger.debug(f"No {profile.name} reported for {path}")
            return "unknown"
        profile.cache.set(path, value)
        return "committed"

    def _scan_files(self, session: ScanSession, tool: str, to_scan: List[str], result: ScanResult) -> bool:
        """Run the worker pool. Returns True if the tool disappeared mid-scan."""
        profile = session.profile
        total = len(to_scan)
        since_checkpoint = 0
        tool_lost = False

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=profile.workers, thread_name_prefix=f"{profile.name}-worker"
        ) as executor:
            futures = [executor.submit(self._scan_one, session, tool, p) for p in to_scan]

            for future in concurrent.futures.as_completed(futures):
                try:
                    outcome = future.result()
                except ScanCancelledError:
                    continue
                except PerFileFailure as e:
                    result.errors += 1
                    outcome = "error"
                    logger.warning(f"{profile.title} scan: {e}")
                except ToolUnavailableError as e:
                    logger.error(f"{profile.title} scan lost its tool: {e}")
                    tool_lost = True
                    session.cancellation.cancel()
                    continue

                result.processed += 1
                if outcome == "committed":
                    result.committed += 1
                    since_checkpoint += 1
                elif outcome == "skipped":
                    result.skipped += 1

                self._progress(result.processed, total, result.errors)
                self._status(
                    f"Scanning {profile.name}… {result.processed}/{total}"
                    f"{self._error_suffix(result.errors)}"
                )

                if since_checkpoint >= self.checkpoint_batch_size:
                    since_checkpoint = 0
                    self._checkpoint(profile)

        return tool_lost

    def _checkpoint(self, profile: ScanProfile) -> None:
        try:
            profile.cache.save()
            logger.debug(f"Checkpointed {profile.name} cache ({len(profile.cache)} entries)")
        except PersistenceError as e:
            logger.error(f"{profile.title} checkpoint failed: {e}")

    @staticmethod
    def _error_suffix(errors: int) -> str:
        return f" ({errors} errors)" if errors else ""

    def _progress(self, processed: int, total: int, errors: int) -> None:
        if self.progress_sink is not None:
            self.progress_sink(processed, total, errors)

    def _status(self, text: str) -> None:
        if self.status_sink is not None:
            self.status_sink(text)

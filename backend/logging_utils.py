"""
Console telemetry for navigation runs.

Runtime progress is reported as tagged console lines ("--- [PLAN] ...").
setup_log_capture() additionally mirrors stdout/stderr into a timestamped log
file so a full transcript of a run can be reviewed afterwards.
"""

import atexit
import os
import sys
import threading
import time
from typing import Optional, TextIO

DEFAULT_LOG_PREFIX = "navigation_run"

# Active capture state; setup happens at most once per process.
_LOG_FILE_HANDLE: Optional[TextIO] = None
_LOG_FILE_PATH: Optional[str] = None
_STDOUT_ORIG: Optional[TextIO] = None
_STDERR_ORIG: Optional[TextIO] = None
_PRINT_LOCK = threading.Lock()


def safe_print(*args, **kwargs) -> None:
    """print() that degrades to ASCII on consoles that cannot encode the text."""
    with _PRINT_LOCK:
        try:
            print(*args, **kwargs)
        except UnicodeEncodeError:
            fallback = [a.encode("ascii", "replace").decode("ascii") if isinstance(a, str) else a for a in args]
            print(*fallback, **kwargs)


def log_event(tag: str, message: str) -> None:
    """Emit one tagged telemetry line, e.g. ``--- [VERIFY] goal reached``."""
    safe_print(f"--- [{tag}] {message}")


class _TeeStream:
    """Console stream that also copies every navigation telemetry line into the run log.

    Writes from the watchdog and the navigate worker thread are serialized, so
    each write lands whole in both streams.
    """

    def __init__(self, original: TextIO, logfile: TextIO):
        self._original = original
        self._logfile = logfile
        self._lock = threading.Lock()
        self.encoding = getattr(original, "encoding", "utf-8")
        self.errors = getattr(original, "errors", "replace")

    def write(self, data: str) -> int:
        with self._lock:
            written = self._original.write(data)
            self._logfile.write(data)
            return written

    def flush(self) -> None:
        with self._lock:
            self._original.flush()
            self._logfile.flush()

    def isatty(self) -> bool:
        return self._original.isatty()

    def __getattr__(self, name):
        return getattr(self._original, name)


def stop_log_capture() -> None:
    """Restore the original streams and close the capture file."""
    global _LOG_FILE_HANDLE, _LOG_FILE_PATH, _STDOUT_ORIG, _STDERR_ORIG
    if _STDOUT_ORIG is not None:
        sys.stdout = _STDOUT_ORIG
    if _STDERR_ORIG is not None:
        sys.stderr = _STDERR_ORIG
    if _LOG_FILE_HANDLE is not None:
        try:
            _LOG_FILE_HANDLE.flush()
            _LOG_FILE_HANDLE.close()
        except OSError as e:
            safe_print(f"[WARN] Could not close log file {_LOG_FILE_PATH}: {e}")
    _LOG_FILE_HANDLE = None
    _LOG_FILE_PATH = None
    _STDOUT_ORIG = None
    _STDERR_ORIG = None


def get_log_file_path() -> Optional[str]:
    """Return the active capture file path, if capture is running."""
    return _LOG_FILE_PATH


def setup_log_capture(log_dir: Optional[str] = None, filename_prefix: str = DEFAULT_LOG_PREFIX) -> Optional[str]:
    """
    Mirror stdout/stderr to ``<log_dir>/<prefix>_<timestamp>.log``.

    Args:
        log_dir: Directory for log files (defaults to ./logs next to this module).
        filename_prefix: Prefix for the generated filename.

    Returns:
        The absolute path of the log file, or None if it could not be opened.
    """
    global _LOG_FILE_HANDLE, _LOG_FILE_PATH, _STDOUT_ORIG, _STDERR_ORIG

    if _LOG_FILE_HANDLE is not None:
        return _LOG_FILE_PATH

    base_dir = log_dir or os.path.join(os.path.dirname(os.path.abspath(__file__)), "logs")
    timestamp = time.strftime("%Y%m%d-%H%M%S")
    log_path = os.path.abspath(os.path.join(base_dir, f"{filename_prefix}_{timestamp}.log"))

    try:
        os.makedirs(base_dir, exist_ok=True)
        logfile = open(log_path, "w", encoding="utf-8", buffering=1)
    except OSError as e:
        safe_print(f"--- [WARN] Failed to initialize file logging at {log_path}: {e}")
        return None

    _LOG_FILE_HANDLE = logfile
    _LOG_FILE_PATH = log_path
    _STDOUT_ORIG = sys.stdout
    _STDERR_ORIG = sys.stderr

    sys.stdout = _TeeStream(sys.stdout, logfile)
    sys.stderr = _TeeStream(sys.stderr, logfile)

    atexit.register(stop_log_capture)
    return _LOG_FILE_PATH

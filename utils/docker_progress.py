import logging
import platform
import subprocess
from rich.console import Console
from rich.spinner import Spinner
from rich.live import Live
from typing import List, Optional

_log = logging.getLogger(__name__)

# Platform detection for compatible symbols
IS_WINDOWS = platform.system().lower() == 'windows'

if IS_WINDOWS:
    SYMBOL_SUCCESS = "[OK]"
    SYMBOL_FAILED = "[X]"
    SPINNER_STYLE = "line"
else:
    SYMBOL_SUCCESS = "✅"
    SYMBOL_FAILED = "❌"
    SPINNER_STYLE = "dots"

# Seconds a terminated child gets before it is killed
TERMINATE_GRACE = 10

console = Console(stderr=True)


class ProgressMonitor:
    """Context manager showing a spinner while an external command runs."""

    def __init__(self, message: str, enabled: bool = True):
        self.message = message
        self.enabled = enabled and console.is_terminal
        self.spinner = Spinner(SPINNER_STYLE, text=f"  {message}")
        self.live = None
        self.success = False

    def __enter__(self):
        if self.enabled:
            self.live = Live(self.spinner, console=console, refresh_per_second=10, transient=True)
            self.live.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.live:
            self.live.stop()
        if not self.enabled:
            return
        if self.success:
            console.print(f"  {SYMBOL_SUCCESS} {self.message}", style="bold green")
        elif exc_type is KeyboardInterrupt:
            console.print(f"  {SYMBOL_FAILED} {self.message} - Cancelled", style="bold red")
        else:
            console.print(f"  {SYMBOL_FAILED} {self.message} - Failed", style="bold red")

    def set_result(self, result):
        self.success = result.returncode == 0


def _terminate(process):
    '''Stop a child process, escalating to kill after the grace period'''
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=TERMINATE_GRACE)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def run_cancellable(
    command: List[str],
    cwd: Optional[str] = None,
    timeout: Optional[float] = None,
    env: Optional[dict] = None,
) -> subprocess.CompletedProcess:
    """Run a command to completion, terminating the child on interrupt.

    Output is captured as text. A KeyboardInterrupt terminates the child
    process and is re-raised so callers can clean up scoped resources.
    """
    _log.debug("exec: %s", ' '.join(command))
    process = subprocess.Popen(
        command,
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding='utf-8',
        errors='replace',
    )
    try:
        stdout, stderr = process.communicate(timeout=timeout)
    except BaseException:
        _terminate(process)
        raise
    return subprocess.CompletedProcess(command, process.returncode, stdout, stderr)


def run_with_progress(
    command: List[str],
    message: str,
    show_progress: bool = True,
    cwd: Optional[str] = None,
    env: Optional[dict] = None,
) -> subprocess.CompletedProcess:
    """Run a long external command (pull, build, clone) with a spinner."""
    with ProgressMonitor(message, enabled=show_progress) as monitor:
        result = run_cancellable(command, cwd=cwd, env=env)
        monitor.set_result(result)
    return result


def filter_docker_errors(stderr: str) -> str:
    """Filter Docker stderr to show only real errors, not progress lines."""
    if not stderr:
        return ""

    progress_keywords = [
        'Pulling', 'Download', 'Extracting', 'Pull complete',
        'Waiting', 'Verifying', 'Already exists', 'Digest:',
        'Status:', 'Image is up to date', 'Downloaded newer image'
    ]

    error_lines = []
    for line in stderr.split('\n'):
        if any(keyword in line for keyword in progress_keywords):
            continue
        if line.strip():
            error_lines.append(line)

    return '\n'.join(error_lines)

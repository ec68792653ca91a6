"""Utility functions for the setup tool."""
import hashlib
import io
import os
import pwd
import select
import shutil
import sys
from pathlib import Path
from typing import Dict, Optional, Union

import sh
import typer

from gastown_setup.errors import ChecksumMismatch, PromptTimeout, SetupError

_verbose = False


def command_exists(command: str) -> bool:
    """Check if a command exists in the system PATH."""
    return shutil.which(command) is not None


def is_root() -> bool:
    """Check if the script is running as root."""
    return os.geteuid() == 0


def get_real_user() -> str:
    """Get the real username (handles sudo)."""
    user = os.environ.get('SUDO_USER') or os.environ.get('USER')
    if user:
        return user
    return pwd.getpwuid(os.getuid()).pw_name


def get_real_home() -> str:
    """Get the real user's home directory (handles sudo)."""
    sudo_user = os.environ.get('SUDO_USER')
    if sudo_user:
        return os.path.expanduser(f'~{sudo_user}')
    return os.environ.get('HOME', '')


def log_info(message: str) -> None:
    """Log an informational message."""
    print(f"[INFO] {message}")


def log_action(message: str) -> None:
    """Log an action being performed."""
    print(f"  -> {message}")


def log_warning(message: str) -> None:
    """Log a non-fatal problem."""
    print(f"[WARN] {message}")


def log_debug(message: str) -> None:
    """Log a message only when verbose output is enabled."""
    if _verbose:
        print(f"[DEBUG] {message}")


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    global _verbose
    _verbose = verbose


def _stdin_fd() -> Optional[int]:
    try:
        return sys.stdin.fileno()
    except (AttributeError, io.UnsupportedOperation):
        # Not a real file (e.g. captured stdin).
        return None


def wait_for_input(timeout: Optional[float]) -> bool:
    """Block until stdin is readable; False if the timeout expires first."""
    fd = _stdin_fd()
    if not timeout or fd is None:
        return True
    readable, _, _ = select.select([fd], [], [], timeout)
    return bool(readable)


def _read_fd_line(fd: int, timeout: Optional[float]) -> str:
    """Read one line from ``fd`` a byte at a time; input past the newline stays unread."""
    data = bytearray()
    while not data.endswith(b"\n"):
        if not wait_for_input(timeout):
            raise PromptTimeout("Timed out waiting for input")
        byte = os.read(fd, 1)
        if not byte:
            break
        data += byte
    return data.decode('utf-8')


def prompt_value(label: str, timeout: Optional[float] = None, hide_input: bool = False,
                 required: bool = True) -> str:
    """Prompt until a non-empty answer is given (or once, when not required)."""
    while True:
        if not wait_for_input(timeout):
            raise PromptTimeout(f"No answer for '{label}' within {timeout} seconds")
        value = typer.prompt(label, default="", show_default=False, hide_input=hide_input).strip()
        if value or not required:
            return value


def read_until_marker(marker: str, timeout: Optional[float] = None) -> str:
    """Read stdin line by line up to and including the first line containing marker."""
    fd = _stdin_fd() if timeout else None
    lines = []
    while True:
        if fd is None:
            line = sys.stdin.readline()
        else:
            try:
                line = _read_fd_line(fd, timeout)
            except PromptTimeout as exc:
                raise PromptTimeout(f"Timed out waiting for input ending with '{marker}'") from exc
        if not line:
            raise SetupError(f"Input ended before '{marker}' was seen")
        lines.append(line.rstrip('\n') + '\n')
        if marker in line:
            return ''.join(lines)


def sha256_hex(data: Union[str, bytes]) -> str:
    """SHA-256 of text (utf-8) or bytes."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def file_sha256(path: Union[str, Path]) -> str:
    """SHA-256 of a file's contents."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b''):
            digest.update(chunk)
    return digest.hexdigest()


def fetch_script(url: str, checksums: Dict[str, str], require_verified: bool = False) -> str:
    """Download an install script and check it against a pinned SHA-256, if any."""
    expected = checksums.get(url)
    if expected is None and require_verified:
        raise SetupError(f"No checksum configured for {url} and unverified scripts are not allowed")

    script = str(sh.curl("-fsSL", url))

    if expected is None:
        log_warning(f"Running {url} without checksum verification")
        return script

    actual = sha256_hex(script)
    if actual != expected.lower():
        raise ChecksumMismatch(f"{url}: expected sha256 {expected}, got {actual}")
    log_debug(f"Verified {url} ({actual})")
    return script

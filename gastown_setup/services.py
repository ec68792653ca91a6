"""Gas Town HQ bootstrap, systemd user services and the final health check."""
import re
import shutil
import time
from pathlib import Path
from typing import Optional

import sh

from gastown_setup.utils import get_real_user, log_action, log_info

DASHBOARD_SERVICE = "gastown-dashboard"
DAEMON_SERVICE = "gastown-daemon"
LINGER_DIR = Path("/var/lib/systemd/linger")
LIFECYCLE_COMMANDS = ("enable", "git-init", "prime", "up")

_ENV_PATH_LINE = re.compile(r'^Environment=.*PATH=', re.MULTILINE)


def service_path(home: Path) -> str:
    """PATH handed to the user services; they do not read the shell profile."""
    return f"{home}/.local/bin:{home}/go/bin:/usr/local/bin:/usr/local/go/bin:/usr/bin:/bin"


def gt_binary(bin_dir: Path) -> Path:
    """Locate gt: the build directory first, then anywhere on PATH."""
    built = bin_dir / "gt"
    if built.exists():
        return built
    found = shutil.which("gt")
    return Path(found) if found else built


def gt_command(bin_dir: Path) -> sh.Command:
    return sh.Command(str(gt_binary(bin_dir)))


def hq_installed(town_root: Path) -> bool:
    return (town_root / "mayor").is_dir()


def install_hq(town_root: Path, bin_dir: Path, dry_run: bool = False) -> None:
    """Create the Gas Town HQ workspace with ``gt install`` if it is missing."""
    if hq_installed(town_root):
        log_info(f"Gas Town HQ already exists at {town_root}.")
        return

    if dry_run:
        log_action(f"[DRY RUN] Would install Gas Town HQ at {town_root}")
        return

    log_action("Installing Gas Town HQ")
    gt_command(bin_dir)("install", str(town_root), "--shell", _fg=True)


def run_lifecycle(command: str, town_root: Path, bin_dir: Path, dry_run: bool = False) -> None:
    """Run one ``gt`` lifecycle subcommand inside the HQ directory."""
    if dry_run:
        log_action(f"[DRY RUN] Would run gt {command}")
        return

    log_action(f"Running gt {command}")
    gt_command(bin_dir)(command, _cwd=str(town_root), _fg=True)


def wait_for_services(seconds: float, dry_run: bool = False) -> None:
    if dry_run or seconds <= 0:
        return
    log_info("Waiting for services to stabilize...")
    time.sleep(seconds)


def render_dashboard_unit(home: Path, town_root: Path, bin_dir: Path, port: int) -> str:
    """Fill in the packaged dashboard unit template."""
    template_path = Path(__file__).parent / "configs" / f"{DASHBOARD_SERVICE}.service"
    with open(template_path, 'r') as f:
        unit = f.read()

    unit = unit.replace("GT_BINARY_PLACEHOLDER", str(gt_binary(bin_dir)))
    unit = unit.replace("DASHBOARD_PORT_PLACEHOLDER", str(port))
    unit = unit.replace("TOWN_ROOT_PLACEHOLDER", str(town_root))
    unit = unit.replace("SERVICE_PATH_PLACEHOLDER", service_path(home))
    return unit


def systemctl_user(*args: str) -> None:
    sh.systemctl("--user", *args)


def setup_dashboard_service(home: Path, town_root: Path, bin_dir: Path, port: int,
                            dry_run: bool = False) -> None:
    """Install and start the dashboard as a systemd user service."""
    unit_dir = home / ".config" / "systemd" / "user"
    unit_path = unit_dir / f"{DASHBOARD_SERVICE}.service"
    unit = render_dashboard_unit(home, town_root, bin_dir, port)

    if dry_run:
        log_action(f"[DRY RUN] Would install and start {DASHBOARD_SERVICE}")
        return

    if unit_path.exists() and unit_path.read_text() == unit:
        log_info(f"{DASHBOARD_SERVICE} unit is up to date.")
    else:
        log_action(f"Writing {unit_path}")
        unit_dir.mkdir(parents=True, exist_ok=True)
        unit_path.write_text(unit)
        systemctl_user("daemon-reload")

    systemctl_user("enable", "--now", DASHBOARD_SERVICE)


def enable_linger(username: str = "", linger_dir: Optional[Path] = None, dry_run: bool = False) -> None:
    """Let user services run without an open login session."""
    username = username or get_real_user()
    linger_dir = linger_dir or LINGER_DIR
    if (linger_dir / username).exists():
        log_info(f"Linger already enabled for {username}.")
        return

    if dry_run:
        log_action(f"[DRY RUN] Would enable linger for {username}")
        return

    log_action(f"Enabling linger for {username}")
    sh.sudo("loginctl", "enable-linger", username)


def daemon_unit_path(home: Path) -> Path:
    return home / ".local" / "share" / "systemd" / "user" / f"{DAEMON_SERVICE}.service"


def add_unit_path_environment(unit_path: Path, path_value: str) -> bool:
    """Insert an ``Environment="PATH=..."`` line after ``[Service]`` if none exists.

    Returns True when the unit was changed.
    """
    if not unit_path.exists():
        return False

    text = unit_path.read_text()
    if _ENV_PATH_LINE.search(text):
        return False

    lines = text.splitlines(keepends=True)
    for index, line in enumerate(lines):
        if line.strip() == "[Service]":
            lines.insert(index + 1, f'Environment="PATH={path_value}"\n')
            break
    else:
        return False

    unit_path.write_text("".join(lines))
    return True


def setup_daemon_service(home: Path, town_root: Path, bin_dir: Path, dry_run: bool = False) -> None:
    """Have gt generate its supervisor unit, then make sure the unit carries a PATH."""
    if dry_run:
        log_action(f"[DRY RUN] Would enable the {DAEMON_SERVICE} supervisor")
        return

    log_action("Setting up Gas Town daemon service")
    gt_command(bin_dir)("daemon", "enable-supervisor", _cwd=str(town_root), _fg=True)

    if add_unit_path_environment(daemon_unit_path(home), service_path(home)):
        log_action(f"Added PATH to {DAEMON_SERVICE} unit")
        systemctl_user("daemon-reload")
        systemctl_user("restart", DAEMON_SERVICE)


def run_doctor(town_root: Path, bin_dir: Path, dry_run: bool = False) -> None:
    """Run ``gt doctor``; a non-zero exit propagates as ``sh.ErrorReturnCode``."""
    if dry_run:
        log_action("[DRY RUN] Would run gt doctor")
        return

    log_info("Running final health check...")
    gt_command(bin_dir)("doctor", _cwd=str(town_root), _fg=True)

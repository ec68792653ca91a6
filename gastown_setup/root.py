"""Root-mode provisioning: hostname, user account, SSH access, sudo, Tailscale."""
import os
import pwd
import shutil
from pathlib import Path
from typing import Dict, Optional

import sh

from gastown_setup.errors import SetupError
from gastown_setup.packages import ensure_command
from gastown_setup.utils import command_exists, fetch_script, log_action, log_info

SUDOERS_DIR = Path("/etc/sudoers.d")
TAILSCALE_INSTALL_URL = "https://tailscale.com/install.sh"


def set_hostname(hostname: str, dry_run: bool = False) -> None:
    """Set the host name (always; it is an overwrite)."""
    if dry_run:
        log_action(f"[DRY RUN] Would set hostname to {hostname}")
        return

    log_action(f"Setting hostname to {hostname}")
    sh.hostnamectl("set-hostname", hostname)


def ensure_sudo(dry_run: bool = False) -> None:
    ensure_command("sudo", "sudo", dry_run=dry_run)


def ensure_curl(dry_run: bool = False) -> None:
    ensure_command("curl", "curl", dry_run=dry_run)


def user_exists(username: str) -> bool:
    try:
        pwd.getpwnam(username)
    except KeyError:
        return False
    return True


def user_home(username: str) -> Path:
    """Home directory of an existing user, or the useradd default otherwise."""
    try:
        return Path(pwd.getpwnam(username).pw_dir)
    except KeyError:
        return Path("/home") / username


def ensure_user(username: str, dry_run: bool = False) -> None:
    """Create the user with a home directory, bash shell and no password."""
    if user_exists(username):
        log_info(f"User {username} already exists.")
        return

    if dry_run:
        log_action(f"[DRY RUN] Would create user {username}")
        return

    log_action(f"Creating user {username}")
    sh.useradd("-m", "-s", "/bin/bash", username)
    # SSH keys are the only way in; the empty password is never usable remotely.
    sh.passwd("-d", username)


def ensure_authorized_key(ssh_dir: Path, public_key: str, dry_run: bool = False) -> bool:
    """Append the public key to authorized_keys unless it is already present.

    Returns True when the file was changed.
    """
    public_key = public_key.strip()
    authorized_keys = ssh_dir / "authorized_keys"
    existing = authorized_keys.read_text() if authorized_keys.exists() else ""

    if public_key in existing:
        log_info("SSH key already present.")
        return False

    if dry_run:
        log_action(f"[DRY RUN] Would add SSH public key to {authorized_keys}")
        return False

    log_action("Adding SSH public key")
    ssh_dir.mkdir(parents=True, exist_ok=True)
    with open(authorized_keys, 'a') as f:
        if existing and not existing.endswith('\n'):
            f.write('\n')
        f.write(public_key + '\n')
    return True


def fix_ssh_permissions(ssh_dir: Path, username: str, dry_run: bool = False) -> None:
    """Give the user ownership of the SSH dir; 0700 on the dir, 0600 on authorized_keys."""
    if dry_run:
        log_action(f"[DRY RUN] Would fix ownership and permissions of {ssh_dir}")
        return

    ssh_dir.mkdir(parents=True, exist_ok=True)
    shutil.chown(ssh_dir, username, username)
    for root, dirs, files in os.walk(ssh_dir):
        for name in dirs + files:
            shutil.chown(os.path.join(root, name), username, username)

    ssh_dir.chmod(0o700)
    authorized_keys = ssh_dir / "authorized_keys"
    if authorized_keys.exists():
        authorized_keys.chmod(0o600)


def sudoers_line(username: str) -> str:
    return f"{username} ALL=(ALL) NOPASSWD: ALL\n"


def ensure_sudoers(username: str, sudoers_dir: Optional[Path] = None, dry_run: bool = False) -> bool:
    """Install a passwordless sudo drop-in once; an existing file is never touched.

    Returns True when the drop-in was created.
    """
    sudoers_dir = sudoers_dir or SUDOERS_DIR
    sudoers_file = sudoers_dir / username
    if sudoers_file.exists():
        log_info("Sudoers entry already exists.")
        return False

    if dry_run:
        log_action(f"[DRY RUN] Would configure passwordless sudo for {username}")
        return False

    log_action(f"Configuring passwordless sudo for {username}")
    # sudo skips drop-ins whose names contain a dot, so the staging file is inert.
    staging = sudoers_dir / f".{username}.new"
    staging.write_text(sudoers_line(username))
    staging.chmod(0o440)
    try:
        sh.visudo("-cf", str(staging))
    except sh.ErrorReturnCode as exc:
        staging.unlink()
        raise SetupError(f"visudo rejected the sudoers entry for {username}") from exc
    staging.rename(sudoers_file)
    return True


def install_tailscale(checksums: Dict[str, str], require_verified: bool = False,
                      dry_run: bool = False) -> None:
    """Install Tailscale with the vendor install script if not already installed."""
    if command_exists("tailscale"):
        log_info("Tailscale is already installed.")
        return

    if dry_run:
        log_action("[DRY RUN] Would install Tailscale")
        return

    log_action("Installing Tailscale")
    script = fetch_script(TAILSCALE_INSTALL_URL, checksums, require_verified)
    sh.bash("-c", script, _fg=True)


def tailscale_up(auth_key: Optional[str] = None, dry_run: bool = False) -> None:
    """Bring Tailscale online (always)."""
    if dry_run:
        log_action("[DRY RUN] Would run tailscale up")
        return

    log_action("Bringing Tailscale up")
    args = ["up"]
    if auth_key:
        args.append(f"--authkey={auth_key}")
    sh.tailscale(*args, _fg=True)

"""APT package helpers shared by root and user mode."""
from typing import Iterable, List

import sh

from gastown_setup.utils import command_exists, log_action, log_info


def is_package_installed(package: str) -> bool:
    """Check whether dpkg knows the package as installed."""
    try:
        sh.dpkg("-s", package)
    except sh.ErrorReturnCode:
        return False
    return True


def missing_packages(packages: Iterable[str]) -> List[str]:
    """Return the packages that are not installed, in the given order."""
    return [pkg for pkg in packages if not is_package_installed(pkg)]


def apt_install(packages: List[str], use_sudo: bool = False, dry_run: bool = False) -> None:
    """Refresh the package index and install packages in one batch."""
    if not packages:
        return

    if dry_run:
        log_action(f"[DRY RUN] Would install packages: {' '.join(packages)}")
        return

    log_action(f"Installing packages: {' '.join(packages)}")
    if use_sudo:
        sh.sudo("apt-get", "update")
        sh.sudo("apt-get", "install", "-y", *packages)
    else:
        apt_get = sh.Command("apt-get")
        apt_get("update")
        apt_get("install", "-y", *packages)


def ensure_packages(packages: Iterable[str], use_sudo: bool = False, dry_run: bool = False) -> None:
    """Install only the packages that are missing."""
    missing = missing_packages(packages)
    if not missing:
        log_info("Required packages already installed.")
        return
    apt_install(missing, use_sudo=use_sudo, dry_run=dry_run)


def ensure_command(command: str, package: str, use_sudo: bool = False, dry_run: bool = False) -> None:
    """Install the package providing a command when the command is absent."""
    if command_exists(command):
        log_info(f"{command} is already installed.")
        return
    apt_install([package], use_sudo=use_sudo, dry_run=dry_run)


def dpkg_architecture() -> str:
    """Debian architecture name of this host (e.g. amd64, arm64)."""
    return str(sh.dpkg("--print-architecture")).strip()

"""SSH key material, GitHub authentication and git/dolt identity."""
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import sh

from gastown_setup.errors import SetupError, VerificationError
from gastown_setup.utils import (
    command_exists, log_action, log_debug, log_info, prompt_value, read_until_marker,
)

PRIVATE_KEY_MARKER = "END OPENSSH PRIVATE KEY"
DEFAULT_BRANCH = "main"


@dataclass(frozen=True)
class GitIdentity:
    name: str
    email: str


def default_key_path(home: Path) -> Path:
    return home / ".ssh" / "id_ed25519"


def capture_private_key(key_path: Path, key_file: Optional[Path] = None,
                        passphrase: Optional[str] = None,
                        timeout: Optional[float] = None) -> Tuple[str, str]:
    """Collect private key material and passphrase when no key is installed yet.

    The key comes from ``key_file`` when given, otherwise it is pasted on stdin
    and read up to the ``END OPENSSH PRIVATE KEY`` line. Returns
    ``(material, passphrase)``; both are empty when the key already exists.
    """
    if key_path.exists():
        return "", ""

    if key_file is not None:
        key_file = key_file.expanduser()
        if not key_file.exists():
            raise SetupError(f"SSH private key file not found: {key_file}")
        material = key_file.read_text()
    else:
        print(f"Paste your SSH private key (ends with '-----{PRIVATE_KEY_MARKER}-----'):")
        material = read_until_marker(PRIVATE_KEY_MARKER, timeout)

    if passphrase is None:
        passphrase = prompt_value("Key passphrase (leave empty if none)", timeout,
                                  hide_input=True, required=False)
    return material, passphrase


def install_private_key(key_path: Path, material: str, passphrase: str = "",
                        dry_run: bool = False) -> None:
    """Write captured key material with 0600 permissions and strip its passphrase."""
    if not material:
        if key_path.exists():
            log_info(f"SSH key already exists at {key_path}.")
        return

    if dry_run:
        log_action(f"[DRY RUN] Would write SSH private key to {key_path}")
        return

    log_action("Writing SSH private key")
    key_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    key_path.touch(mode=0o600, exist_ok=True)
    key_path.chmod(0o600)
    key_path.write_text(material)

    if passphrase:
        log_action("Stripping passphrase from key")
        sh.Command("ssh-keygen")("-p", "-f", str(key_path), "-P", passphrase, "-N", "")


def gh_authenticated() -> bool:
    if not command_exists("gh"):
        return False
    try:
        sh.gh("auth", "status")
    except sh.ErrorReturnCode:
        return False
    return True


def ensure_github_auth(dry_run: bool = False) -> None:
    """Run the browser login flow unless gh is already authenticated."""
    if gh_authenticated():
        log_info("Already authenticated with GitHub.")
        return

    if dry_run:
        log_action("[DRY RUN] Would authenticate with GitHub")
        return

    log_action("Authenticating with GitHub")
    # Reuse the key installed earlier instead of letting gh generate one.
    sh.gh("auth", "login", "--hostname", "github.com", "--git-protocol", "ssh",
          "--skip-ssh-key", "--web", _fg=True)


def identity_from_profile(profile: dict) -> GitIdentity:
    """Name falls back to the login; email falls back to <login>@localhost."""
    login = profile.get("login") or ""
    if not login:
        raise SetupError("GitHub profile has no login")
    name = profile.get("name") or login
    email = profile.get("email") or f"{login}@localhost"
    return GitIdentity(name=name, email=email)


def github_identity() -> GitIdentity:
    """Derive the git identity from the authenticated GitHub account."""
    output = str(sh.gh("api", "user"))
    try:
        profile = json.loads(output)
    except json.JSONDecodeError as exc:
        raise SetupError("Unexpected response from 'gh api user'") from exc
    return identity_from_profile(profile)


def get_git_config(key: str) -> Optional[str]:
    if not command_exists("git"):
        return None
    try:
        return str(sh.git("config", "--global", "--get", key)).strip()
    except sh.ErrorReturnCode:
        return None


def set_git_config(key: str, value: str, dry_run: bool = False) -> bool:
    """Set a global git option and read it back. Returns True when it changed."""
    if get_git_config(key) == value:
        log_debug(f"git {key} already set to {value}")
        return False

    if dry_run:
        log_action(f"[DRY RUN] Would set git {key} to {value}")
        return False

    sh.git("config", "--global", key, value)
    actual = get_git_config(key)
    if actual != value:
        raise VerificationError(f"git {key} reads back as {actual!r}, expected {value!r}")
    return True


def configure_git_identity(identity: GitIdentity, dry_run: bool = False) -> None:
    log_info("Setting git identity from GitHub profile")
    set_git_config("user.name", identity.name, dry_run=dry_run)
    set_git_config("user.email", identity.email, dry_run=dry_run)
    print(f"    name:  {identity.name}")
    print(f"    email: {identity.email}")


def configure_git_hosting(dry_run: bool = False) -> None:
    """Route git credentials through gh and set the default branch for new repos."""
    if dry_run:
        log_action("[DRY RUN] Would configure git to use gh")
    else:
        log_action("Configuring git to use gh")
        sh.gh("auth", "setup-git")
    set_git_config("init.defaultBranch", DEFAULT_BRANCH, dry_run=dry_run)


def configure_dolt_identity(identity: GitIdentity, dry_run: bool = False) -> None:
    """Write the identity into dolt's global config. Callers treat failures as ignorable."""
    if dry_run:
        log_action("[DRY RUN] Would configure dolt identity")
        return

    log_action("Configuring dolt identity")
    sh.dolt("config", "--global", "--add", "user.name", identity.name)
    sh.dolt("config", "--global", "--add", "user.email", identity.email)

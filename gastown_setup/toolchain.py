"""Developer toolchain: Go, PATH, Claude, gh, dolt and the source-built CLIs."""
import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import sh

from gastown_setup.errors import ChecksumMismatch, PatchNotApplied, SetupError, VerificationError
from gastown_setup.packages import apt_install, dpkg_architecture
from gastown_setup.utils import (
    command_exists, fetch_script, file_sha256, log_action, log_info, log_warning,
)

GO_INDEX_URL = "https://go.dev/dl/?mode=json"
GO_DOWNLOAD_URL = "https://go.dev/dl/{filename}"
GO_ROOT = Path("/usr/local/go")
GO_STAGING = Path("/usr/local/.go-staging")

CLAUDE_INSTALL_URL = "https://claude.ai/install.sh"
DOLT_INSTALL_URL = "https://github.com/dolthub/dolt/releases/latest/download/install.sh"

GH_KEYRING_URL = "https://cli.github.com/packages/githubcli-archive-keyring.gpg"
GH_KEYRING_DIR = Path("/etc/apt/keyrings")
GH_KEYRING = GH_KEYRING_DIR / "githubcli-archive-keyring.gpg"
GH_SOURCES_LIST = Path("/etc/apt/sources.list.d/github-cli.list")

PATH_LINE = 'export PATH="$PATH:/usr/local/bin:/usr/local/go/bin:$HOME/.local/bin:$HOME/go/bin"'


@dataclass(frozen=True)
class SourcePatch:
    """A literal text replacement applied to a checkout before building."""

    relative_path: str
    old: str
    new: str


@dataclass(frozen=True)
class SourceTool:
    """A CLI built with ``go build`` from a git repository."""

    name: str
    binary: str
    repo_url: str
    package: str
    patches: tuple = ()


BEADS = SourceTool(
    name="beads",
    binary="bd",
    repo_url="https://github.com/steveyegge/beads.git",
    package="./cmd/bd",
)

GASTOWN = SourceTool(
    name="gastown",
    binary="gt",
    repo_url="https://github.com/steveyegge/gastown.git",
    package="./cmd/gt",
    patches=(
        SourcePatch("internal/web/fetcher.go", 'json:"last_heartbeat"', 'json:"timestamp"'),
    ),
)


# --- Go ---------------------------------------------------------------------

def check_go() -> bool:
    """Check if Go is on PATH or present at the standard install location."""
    return command_exists("go") or (GO_ROOT / "bin" / "go").exists()


def select_go_archive(releases: List[dict], arch: str) -> Dict[str, str]:
    """Pick the linux archive for ``arch`` from the newest stable release.

    The returned entry carries the release's ``version``; file entries in the
    index do not always have one of their own.
    """
    for release in releases:
        if not release.get("stable", False):
            continue
        for entry in release.get("files", []):
            if entry.get("os") == "linux" and entry.get("arch") == arch and entry.get("kind") == "archive":
                return dict(entry, version=release.get("version", entry.get("version", "go")))
        raise SetupError(f"Go {release.get('version')} has no linux/{arch} archive")
    raise SetupError("No stable Go release found in the download index")


def latest_go_archive(arch: str) -> Dict[str, str]:
    """Query go.dev for the newest stable archive."""
    response = str(sh.curl("-fsSL", GO_INDEX_URL))
    try:
        releases = json.loads(response)
    except json.JSONDecodeError as exc:
        raise SetupError("Could not parse the Go download index") from exc
    return select_go_archive(releases, arch)


def install_go(dry_run: bool = False) -> None:
    """Install the latest stable Go into /usr/local/go if Go is missing."""
    if check_go():
        log_info("Go is already installed.")
        return

    arch = dpkg_architecture()
    archive = latest_go_archive(arch)
    if dry_run:
        log_action(f"[DRY RUN] Would install {archive['version']} for linux/{arch}")
        return

    log_action(f"Installing {archive['version']} from go.dev")
    with tempfile.TemporaryDirectory() as tmp:
        tarball = Path(tmp) / archive["filename"]
        sh.curl("-fsSL", GO_DOWNLOAD_URL.format(filename=archive["filename"]), "-o", str(tarball))

        actual = file_sha256(tarball)
        if actual != archive["sha256"]:
            raise ChecksumMismatch(f"{archive['filename']}: expected sha256 {archive['sha256']}, got {actual}")

        # Extract beside the old install and swap, so a failed extraction leaves it intact.
        sh.sudo("rm", "-rf", str(GO_STAGING))
        sh.sudo("mkdir", "-p", str(GO_STAGING))
        sh.sudo("tar", "-C", str(GO_STAGING), "-xzf", str(tarball))
        sh.sudo("rm", "-rf", str(GO_ROOT))
        sh.sudo("mv", str(GO_STAGING / "go"), str(GO_ROOT))
        sh.sudo("rm", "-rf", str(GO_STAGING))


# --- PATH -------------------------------------------------------------------

def path_entries(home: Path) -> List[str]:
    return ["/usr/local/bin", "/usr/local/go/bin", f"{home}/.local/bin", f"{home}/go/bin"]


def is_stale_path_line(line: str) -> bool:
    """A PATH export written by an earlier run, in any of its past shapes."""
    stripped = line.strip()
    if "PATH=" not in stripped or stripped == PATH_LINE:
        return False
    return "/usr/local/go/bin" in stripped or (".local/bin" in stripped and "go/bin" in stripped)


def configure_profile_path(profile: Path, dry_run: bool = False) -> bool:
    """Leave exactly one canonical PATH line in the shell profile.

    Returns True when the profile was rewritten.
    """
    lines = profile.read_text().splitlines() if profile.exists() else []
    kept = [line for line in lines if line.strip() != PATH_LINE and not is_stale_path_line(line)]

    if len(kept) == len(lines) - 1 and PATH_LINE in (line.strip() for line in lines):
        log_info("PATH already configured in shell profile.")
        return False

    if dry_run:
        log_action(f"[DRY RUN] Would write PATH line to {profile}")
        return False

    log_action(f"Updating PATH in {profile}")
    profile.write_text("\n".join(kept + [PATH_LINE]) + "\n")

    count = sum(1 for line in profile.read_text().splitlines() if line.strip() == PATH_LINE)
    if count != 1:
        raise VerificationError(f"{profile} has {count} canonical PATH lines after rewrite")
    return True


def export_path(home: Path, environ: Optional[Dict[str, str]] = None) -> str:
    """Append the toolchain directories to PATH for this process and its children."""
    environ = os.environ if environ is None else environ
    current = [entry for entry in environ.get("PATH", "").split(os.pathsep) if entry]
    for entry in path_entries(home):
        if entry not in current:
            current.append(entry)
    environ["PATH"] = os.pathsep.join(current)
    return environ["PATH"]


# --- Remote-script installers -----------------------------------------------

def install_claude(checksums: Dict[str, str], require_verified: bool = False,
                   dry_run: bool = False) -> None:
    if command_exists("claude"):
        log_info("Claude Code is already installed.")
        return

    if dry_run:
        log_action("[DRY RUN] Would install Claude Code")
        return

    log_action("Installing Claude Code")
    script = fetch_script(CLAUDE_INSTALL_URL, checksums, require_verified)
    sh.bash("-c", script, _fg=True)


def launch_claude_login(dry_run: bool = False) -> None:
    """Start Claude interactively so the operator completes the login flow."""
    if dry_run:
        log_action("[DRY RUN] Would launch Claude to force login")
        return

    log_action("Launching Claude to force login...")
    sh.claude(_fg=True)


def install_dolt(checksums: Dict[str, str], require_verified: bool = False,
                 dry_run: bool = False) -> None:
    if command_exists("dolt"):
        log_info("dolt is already installed.")
        return

    if dry_run:
        log_action("[DRY RUN] Would install dolt")
        return

    log_action("Installing dolt")
    script = fetch_script(DOLT_INSTALL_URL, checksums, require_verified)
    sh.sudo("bash", "-c", script, _fg=True)


def install_gh(dry_run: bool = False) -> None:
    """Install the GitHub CLI from its apt repository."""
    if command_exists("gh"):
        log_info("gh is already installed.")
        return

    if dry_run:
        log_action("[DRY RUN] Would install gh")
        return

    log_action("Installing gh")
    arch = dpkg_architecture()
    sh.sudo("mkdir", "-p", "-m", "755", str(GH_KEYRING_DIR))
    sh.sudo("curl", "-fsSL", GH_KEYRING_URL, "-o", str(GH_KEYRING))
    sh.sudo("chmod", "go+r", str(GH_KEYRING))
    source = (f"deb [arch={arch} signed-by={GH_KEYRING}] "
              "https://cli.github.com/packages stable main\n")
    sh.sudo("tee", str(GH_SOURCES_LIST), _in=source)
    apt_install(["gh"], use_sudo=True)


# --- Source-built tools -----------------------------------------------------

def apply_patch(source_root: Path, patch: SourcePatch, required: bool = True) -> bool:
    """Apply a literal replacement and confirm it took.

    Already-patched source passes. Source containing neither string raises
    :class:`PatchNotApplied` (or only warns when ``required`` is False).
    Returns True when the file was modified.
    """
    target = source_root / patch.relative_path
    if not target.exists():
        message = f"Patch target {target} does not exist"
        if required:
            raise PatchNotApplied(message)
        log_warning(message)
        return False

    text = target.read_text()
    if patch.old not in text:
        if patch.new in text:
            log_info(f"{patch.relative_path} already patched.")
            return False
        message = f"{patch.relative_path} contains neither {patch.old!r} nor {patch.new!r}"
        if required:
            raise PatchNotApplied(message)
        log_warning(message)
        return False

    log_action(f"Patching {patch.relative_path}: {patch.old} -> {patch.new}")
    target.write_text(text.replace(patch.old, patch.new))
    if patch.old in target.read_text():
        raise PatchNotApplied(f"{patch.relative_path} still contains {patch.old!r}")
    return True


def install_from_source(tool: SourceTool, src_dir: Path, bin_dir: Path,
                        patch_required: bool = True, dry_run: bool = False) -> None:
    """Clone (or reuse) the tool's repository, patch it and go build the binary."""
    if command_exists(tool.binary):
        log_info(f"{tool.name} is already installed.")
        return

    checkout = src_dir / tool.name
    if dry_run:
        log_action(f"[DRY RUN] Would build {tool.binary} from {tool.repo_url}")
        return

    log_action(f"Installing {tool.name} from source")
    if (checkout / ".git").exists():
        log_info(f"Reusing existing checkout at {checkout}")
    else:
        src_dir.mkdir(parents=True, exist_ok=True)
        sh.git("clone", tool.repo_url, str(checkout))

    for patch in tool.patches:
        apply_patch(checkout, patch, required=patch_required)

    bin_dir.mkdir(parents=True, exist_ok=True)
    sh.go("build", "-o", str(bin_dir / tool.binary), tool.package, _cwd=str(checkout))

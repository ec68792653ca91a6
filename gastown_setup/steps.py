"""Provisioning workflow steps."""
import enum
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, List, Optional

import sh

from gastown_setup import identity, packages, root, services, toolchain
from gastown_setup.config import USERNAME_PATTERN, SetupConfig
from gastown_setup.errors import SetupError, StepFailed
from gastown_setup.utils import is_root, log_debug, log_info, log_warning, prompt_value


class StepPolicy(enum.Enum):
    """What a failing step does to the run."""

    FATAL = "fatal"
    WARN = "warn"
    IGNORE = "ignore"


@dataclass
class Step:
    name: str
    action: Callable[[], None]
    policy: StepPolicy = StepPolicy.FATAL


@dataclass
class StepResult:
    name: str
    status: str
    message: str = ""


@dataclass
class RunReport:
    """Ordered outcome of every step that ran."""

    mode: str
    results: List[StepResult] = field(default_factory=list)

    def record(self, name: str, status: str, message: str = "") -> None:
        self.results.append(StepResult(name, status, message))

    @property
    def warnings(self) -> List[StepResult]:
        return [r for r in self.results if r.status == "warned"]

    @property
    def failed(self) -> List[StepResult]:
        return [r for r in self.results if r.status == "failed"]

    @property
    def ok(self) -> bool:
        return not self.failed and not self.warnings

    def status_of(self, name: str) -> Optional[str]:
        for result in self.results:
            if result.name == name:
                return result.status
        return None

    def summary(self) -> str:
        width = max((len(r.name) for r in self.results), default=0)
        lines = [f"Setup report ({self.mode} mode):"]
        for result in self.results:
            line = f"  {result.name.ljust(width)}  {result.status}"
            if result.message:
                line += f"  ({result.message})"
            lines.append(line)
        return "\n".join(lines)


def describe_error(exc: Exception) -> str:
    if isinstance(exc, sh.ErrorReturnCode):
        return f"{exc.full_cmd} exited with {exc.exit_code}"
    return str(exc) or exc.__class__.__name__


def run_steps(steps: List[Step], report: RunReport) -> RunReport:
    """Run steps in order, applying each step's failure policy."""
    for step in steps:
        log_debug(f"Step: {step.name}")
        try:
            step.action()
        except (SetupError, sh.ErrorReturnCode, sh.CommandNotFound, OSError) as exc:
            message = describe_error(exc)
            if step.policy is StepPolicy.FATAL:
                report.record(step.name, "failed", message)
                raise StepFailed(step.name, message, report) from exc
            if step.policy is StepPolicy.WARN:
                log_warning(f"{step.name} had issues (may be OK): {message}")
                report.record(step.name, "warned", message)
            else:
                log_debug(f"{step.name} failed, ignoring: {message}")
                report.record(step.name, "ignored", message)
        else:
            report.record(step.name, "ok")
    return report


# --- Root mode --------------------------------------------------------------

def resolve_root_inputs(config: SetupConfig) -> SetupConfig:
    """Prompt for whichever root-mode inputs the configuration does not supply."""
    timeout = config.prompt_timeout
    hostname = config.hostname or prompt_value("Hostname", timeout)
    username = config.username
    while not username:
        answer = prompt_value("Username", timeout)
        if USERNAME_PATTERN.match(answer):
            username = answer
        else:
            log_warning(f"Invalid username: {answer!r}")
    public_key = config.ssh_public_key or prompt_value("SSH public key", timeout)
    return config.with_overrides(hostname=hostname, username=username, ssh_public_key=public_key)


def root_steps(config: SetupConfig, dry_run: bool = False) -> List[Step]:
    username = config.username
    checksums = config.script_checksums
    verified = config.require_verified_scripts
    return [
        Step("hostname", partial(root.set_hostname, config.hostname, dry_run=dry_run)),
        Step("sudo", partial(root.ensure_sudo, dry_run=dry_run)),
        Step("user", partial(root.ensure_user, username, dry_run=dry_run)),
        # The home directory only exists once the user does, so resolve it late.
        Step("authorized-key", lambda: root.ensure_authorized_key(
            root.user_home(username) / ".ssh", config.ssh_public_key, dry_run=dry_run)),
        Step("ssh-permissions", lambda: root.fix_ssh_permissions(
            root.user_home(username) / ".ssh", username, dry_run=dry_run)),
        Step("sudoers", partial(root.ensure_sudoers, username, dry_run=dry_run)),
        Step("curl", partial(root.ensure_curl, dry_run=dry_run)),
        Step("tailscale", partial(root.install_tailscale, checksums, verified, dry_run=dry_run)),
        Step("tailscale-up", partial(root.tailscale_up, config.tailscale_auth_key, dry_run=dry_run)),
    ]


def provision_root(config: SetupConfig, dry_run: bool = False) -> RunReport:
    config = resolve_root_inputs(config)
    report = run_steps(root_steps(config, dry_run), RunReport(mode="root"))
    log_info(f"Root setup complete. Now log in as {config.username} and run gastown-setup again.")
    return report


# --- User mode --------------------------------------------------------------

@dataclass
class UserSession:
    """Values produced by one user-mode step and consumed by a later one."""

    key_material: str = ""
    passphrase: str = ""
    git_identity: Optional[identity.GitIdentity] = None
    doctor_passed: bool = False


def user_steps(config: SetupConfig, session: UserSession, dry_run: bool = False) -> List[Step]:
    home = config.home
    key_path = identity.default_key_path(home)
    town = config.town_path
    bin_dir = config.go_bin_path
    checksums = config.script_checksums
    verified = config.require_verified_scripts

    def capture_key() -> None:
        session.key_material, session.passphrase = identity.capture_private_key(
            key_path, config.ssh_private_key_file, config.ssh_key_passphrase, config.prompt_timeout)

    def configure_path() -> None:
        toolchain.configure_profile_path(home / ".bashrc", dry_run=dry_run)
        toolchain.export_path(home)

    def derive_identity() -> None:
        if dry_run and not identity.gh_authenticated():
            log_info("Skipping git identity in dry run (gh not authenticated)")
            return
        session.git_identity = identity.github_identity()
        identity.configure_git_identity(session.git_identity, dry_run=dry_run)

    def dolt_identity() -> None:
        if session.git_identity is not None:
            identity.configure_dolt_identity(session.git_identity, dry_run=dry_run)

    def doctor() -> None:
        services.run_doctor(town, bin_dir, dry_run=dry_run)
        session.doctor_passed = True

    steps = [
        Step("ssh-key-capture", capture_key),
        Step("packages", partial(packages.ensure_packages, config.packages, use_sudo=True, dry_run=dry_run)),
        Step("ssh-key", lambda: identity.install_private_key(
            key_path, session.key_material, session.passphrase, dry_run=dry_run)),
        Step("go", partial(toolchain.install_go, dry_run=dry_run)),
        Step("path", configure_path),
        Step("claude", partial(toolchain.install_claude, checksums, verified, dry_run=dry_run)),
    ]
    if config.agent_login:
        steps.append(Step("claude-login", partial(toolchain.launch_claude_login, dry_run=dry_run)))
    steps += [
        Step("gh", partial(toolchain.install_gh, dry_run=dry_run)),
        Step("gh-auth", partial(identity.ensure_github_auth, dry_run=dry_run)),
        Step("git-identity", derive_identity),
        Step("git-hosting", partial(identity.configure_git_hosting, dry_run=dry_run)),
        Step("dolt", partial(toolchain.install_dolt, checksums, verified, dry_run=dry_run)),
        Step("dolt-identity", dolt_identity, StepPolicy.IGNORE),
        Step("beads", partial(toolchain.install_from_source, toolchain.BEADS, config.src_path, bin_dir,
                              config.gastown_patch_required, dry_run=dry_run)),
        Step("gastown", partial(toolchain.install_from_source, toolchain.GASTOWN, config.src_path, bin_dir,
                                config.gastown_patch_required, dry_run=dry_run)),
        Step("hq", partial(services.install_hq, town, bin_dir, dry_run=dry_run)),
    ]
    for command in services.LIFECYCLE_COMMANDS:
        steps.append(Step(f"gt-{command}", partial(services.run_lifecycle, command, town, bin_dir,
                                                   dry_run=dry_run), StepPolicy.WARN))
    steps += [
        Step("settle", partial(services.wait_for_services, config.settle_seconds, dry_run=dry_run)),
        Step("dashboard-service", partial(services.setup_dashboard_service, home, town, bin_dir,
                                          config.dashboard_port, dry_run=dry_run)),
        Step("linger", partial(services.enable_linger, dry_run=dry_run)),
        Step("daemon-service", partial(services.setup_daemon_service, home, town, bin_dir, dry_run=dry_run)),
        Step("doctor", doctor, StepPolicy.WARN),
    ]
    return steps


def print_user_summary(config: SetupConfig, session: UserSession) -> None:
    town = config.town_path
    print("")
    print("=============================================")
    if session.doctor_passed:
        print("  Gas Town setup complete! All checks pass.")
    else:
        print("  Gas Town setup complete (with warnings).")
        print(f"  Run 'cd {town} && gt doctor -v' for details.")
    print("=============================================")
    print("")
    print(f"Next steps: (dashboard running at http://localhost:{config.dashboard_port})")
    print("  1. Add a project rig:         gt rig add <name> <git-url>")
    print("  2. Check health:              gt doctor")
    print("  3. Enter Mayor's office:      gt mayor attach")
    print("")
    print(f"Run: source ~/.bashrc && cd {town}")
    print("")


def provision_user(config: SetupConfig, dry_run: bool = False) -> RunReport:
    session = UserSession()
    report = run_steps(user_steps(config, session, dry_run), RunReport(mode="user"))
    print_user_summary(config, session)
    return report


def provision_system(config: SetupConfig, dry_run: bool = False) -> RunReport:
    """Main provisioning workflow - picks root or user mode from the effective uid."""
    if is_root():
        return provision_root(config, dry_run=dry_run)
    return provision_user(config, dry_run=dry_run)

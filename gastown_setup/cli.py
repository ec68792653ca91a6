"""CLI interface for the Gas Town setup tool."""
from pathlib import Path
from typing import Optional

import sh
import typer

from . import config as config_module
from . import steps
from . import utils
from .errors import SetupError, StepFailed


def setup(
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview changes without applying them"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
    hostname: Optional[str] = typer.Option(None, "--hostname", help="Host name to set (root mode)"),
    username: Optional[str] = typer.Option(None, "--username", help="User to create (root mode)"),
    ssh_pubkey: Optional[str] = typer.Option(None, "--ssh-pubkey", help="Authorized SSH public key (root mode)"),
    ssh_key_file: Optional[Path] = typer.Option(None, "--ssh-key-file", help="Private key to install (user mode)"),
    prompt_timeout: Optional[float] = typer.Option(None, "--prompt-timeout",
                                                   help="Seconds to wait for interactive input (0 = forever)"),
):
    """Provision a Gas Town host: run as root for the OS, then as the user for tools and services."""
    utils.setup_logging(verbose)

    try:
        cfg = config_module.load_config(config).with_overrides(
            hostname=hostname,
            username=username,
            ssh_public_key=ssh_pubkey,
            ssh_private_key_file=ssh_key_file,
            prompt_timeout=prompt_timeout,
        )
        report = steps.provision_system(cfg, dry_run=dry_run)
    except StepFailed as exc:
        if exc.report is not None:
            typer.echo(exc.report.summary())
        typer.echo(f"❗ {exc}")
        raise typer.Exit(1)
    except SetupError as exc:
        typer.echo(f"❗ {exc}")
        raise typer.Exit(1)
    except sh.ErrorReturnCode as exc:
        typer.echo(f"❗ {exc.full_cmd} failed with exit code {exc.exit_code}")
        raise typer.Exit(1)
    except sh.CommandNotFound as exc:
        typer.echo(f"❗ Command not found: {exc}")
        raise typer.Exit(1)
    except OSError as exc:
        typer.echo(f"❗ {exc}")
        raise typer.Exit(1)

    if verbose or not report.ok:
        typer.echo(report.summary())
    if report.ok:
        typer.echo("✅ Provisioning complete!")
    else:
        typer.echo(f"⚠️  Provisioning complete with {len(report.warnings)} warning(s).")


app = typer.Typer(
    name="gastown-setup",
    help="Bootstrap a single-host Gas Town multi-agent workspace.",
    add_completion=False,
    invoke_without_command=True,
    callback=setup,
)


if __name__ == "__main__":
    app()

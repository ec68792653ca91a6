"""Configuration loading for the setup tool."""
import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from gastown_setup.errors import SetupError
from gastown_setup.utils import get_real_home

DEFAULT_CONFIG_PATH = Path("~/.config/gastown-setup/config.yaml")

DEFAULT_PACKAGES = (
    "build-essential",
    "git",
    "libicu-dev",
    "libzstd-dev",
    "sqlite3",
    "tmux",
    "curl",
)

USERNAME_PATTERN = re.compile(r'^[a-z_][a-z0-9_-]*$')

# Environment variables that override config file values.
ENV_OVERRIDES = {
    "GASTOWN_HOSTNAME": "hostname",
    "GASTOWN_USERNAME": "username",
    "GASTOWN_SSH_PUBKEY": "ssh_public_key",
    "GASTOWN_SSH_KEY_FILE": "ssh_private_key_file",
    "GASTOWN_SSH_KEY_PASSPHRASE": "ssh_key_passphrase",
    "GASTOWN_TAILSCALE_AUTHKEY": "tailscale_auth_key",
}


_TRUE_STRINGS = ("true", "yes", "on", "1")
_FALSE_STRINGS = ("false", "no", "off", "0")


def parse_bool(key: str, value: Any) -> bool:
    """Accept YAML booleans and their usual string spellings; reject anything else."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise SetupError(f"{key} must be true or false, got {value!r}")


@dataclass(frozen=True)
class SetupConfig:
    """Inputs and tunables for both setup modes."""

    hostname: Optional[str] = None
    username: Optional[str] = None
    ssh_public_key: Optional[str] = None
    ssh_private_key_file: Optional[Path] = None
    ssh_key_passphrase: Optional[str] = None
    tailscale_auth_key: Optional[str] = None
    prompt_timeout: float = 300
    packages: Tuple[str, ...] = DEFAULT_PACKAGES
    agent_login: bool = True
    town_root: Path = Path("~/gt")
    src_dir: Path = Path("~/src")
    go_bin_dir: Path = Path("~/go/bin")
    dashboard_port: int = 8080
    settle_seconds: float = 3
    gastown_patch_required: bool = True
    require_verified_scripts: bool = False
    script_checksums: Dict[str, str] = field(default_factory=dict)

    @property
    def home(self) -> Path:
        return Path(get_real_home() or Path.home())

    def expand(self, path: Path) -> Path:
        """Resolve ``~`` against the real user's home directory."""
        text = str(path)
        if text == "~" or text.startswith("~/"):
            return self.home / text[2:]
        return path

    @property
    def town_path(self) -> Path:
        return self.expand(self.town_root)

    @property
    def src_path(self) -> Path:
        return self.expand(self.src_dir)

    @property
    def go_bin_path(self) -> Path:
        return self.expand(self.go_bin_dir)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SetupConfig":
        """Create a :class:`SetupConfig` from raw dictionary data."""
        known = {f.name for f in fields(SetupConfig)}
        unknown = set(data) - known
        if unknown:
            raise SetupError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        values: Dict[str, Any] = {}
        for key, value in data.items():
            if value is None:
                continue
            if key in ("town_root", "src_dir", "go_bin_dir", "ssh_private_key_file"):
                value = Path(str(value))
            elif key == "packages":
                if isinstance(value, str):
                    value = value.split()
                value = tuple(str(pkg) for pkg in value)
            elif key == "script_checksums":
                if not isinstance(value, dict):
                    raise SetupError("script_checksums must be a mapping of URL to sha256")
                value = {str(url): str(digest) for url, digest in value.items()}
            elif key in ("prompt_timeout", "settle_seconds"):
                value = float(value)
            elif key == "dashboard_port":
                value = int(value)
            elif key in ("agent_login", "gastown_patch_required", "require_verified_scripts"):
                value = parse_bool(key, value)
            else:
                value = str(value)
            values[key] = value

        config = SetupConfig(**values)
        config.validate()
        return config

    def with_overrides(self, **overrides: Any) -> "SetupConfig":
        """Return a copy with the non-None overrides applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if not changes:
            return self
        config = replace(self, **changes)
        config.validate()
        return config

    def validate(self) -> None:
        if self.username is not None and not USERNAME_PATTERN.match(self.username):
            raise SetupError(f"Invalid username: {self.username!r}")
        if not 0 < self.dashboard_port < 65536:
            raise SetupError(f"Invalid dashboard port: {self.dashboard_port}")
        if self.prompt_timeout < 0:
            raise SetupError("prompt_timeout must not be negative")


def load_config(config_path: Optional[Path] = None) -> SetupConfig:
    """Load configuration from file and environment."""
    path = Path(os.path.expanduser(str(config_path or DEFAULT_CONFIG_PATH)))
    data: Dict[str, Any] = {}

    if path.exists():
        with open(path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise SetupError(f"Cannot parse {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise SetupError(f"{path} must contain a mapping")
    elif config_path is not None:
        raise SetupError(f"Config file not found: {path}")

    for env_var, key in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            data[key] = value

    return SetupConfig.from_dict(data)

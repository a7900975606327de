from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

from platformdirs import user_config_path

from .errors import InstallError, InvalidInput

DEFAULT_KEYCLOAK_HOME = Path("/opt/keycloak")
RADIUS_CONFIG_REL = Path("config") / "radius.config"
DEFAULT_REPO = "vzakharchenko/keycloak-radius-plugin"
DEFAULT_API_URL = "https://api.github.com"
DEFAULT_SOURCE_URL = "https://github.com/vzakharchenko/keycloak-radius-plugin.git"
DEFAULT_SERVICE_NAME = "keycloak"
DEFAULT_TIMEOUT_S = 30.0

SOURCE_KINDS = ("release", "source")

# Environment variable -> settings field.
ENV_OVERRIDES = {
    "KEYCLOAK_HOME": "keycloak_home",
    "KC_RADIUS_TAG": "tag",
    "KC_RADIUS_CONFIG_PATH": "config_path",
    "KC_RADIUS_REPO": "repo",
    "GITHUB_TOKEN": "github_token",
}

_PATH_FIELDS = {"keycloak_home", "config_path", "work_dir"}


@dataclass(frozen=True)
class InstallerSettings:
    keycloak_home: Path | None = None
    tag: str | None = None  # None resolves the latest release
    config_path: Path | None = None  # defaults to <keycloak_home>/config/radius.config
    repo: str = DEFAULT_REPO
    api_url: str = DEFAULT_API_URL
    github_token: str | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    source: str = "release"  # "release" or "source"
    source_url: str = DEFAULT_SOURCE_URL
    source_ref: str | None = None
    work_dir: Path | None = None  # checkout location for source builds
    include_secondary: bool = False
    service_name: str = DEFAULT_SERVICE_NAME
    install_packages: bool = True
    verify: bool = True
    rollback_on_failure: bool = True

    def home(self) -> Path:
        return self.keycloak_home if self.keycloak_home is not None else DEFAULT_KEYCLOAK_HOME

    def providers_dir(self) -> Path:
        return self.home() / "providers"

    def radius_config_path(self) -> Path:
        if self.config_path is not None:
            return self.config_path
        return self.home() / RADIUS_CONFIG_REL

    def lock_path(self) -> Path:
        return self.home() / ".kc-radius.lock"


def settings_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("KC_RADIUS_SETTINGS_PATH"):
        return Path(env).expanduser()
    return user_config_path("kc-radius") / "config.json"


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in _PATH_FIELDS:
        return Path(value).expanduser()
    return value


def load_settings(path_override: str | Path | None = None) -> InstallerSettings:
    path = settings_path(path_override)
    if not path.exists():
        return InstallerSettings()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise InstallError(f"Could not read settings file {path}: {e}", phase="settings") from e
    except ValueError as e:
        raise InvalidInput(f"Settings file {path} is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        return InstallerSettings()

    allowed = {f.name for f in fields(InstallerSettings)}
    filtered: dict[str, Any] = {k: _coerce(k, v) for k, v in raw.items() if k in allowed}
    return InstallerSettings(**filtered)


def _to_json(settings: InstallerSettings) -> dict[str, Any]:
    data = asdict(settings)
    for key in _PATH_FIELDS:
        if data.get(key) is not None:
            data[key] = str(data[key])
    return data


def save_settings(settings: InstallerSettings, path_override: str | Path | None = None) -> Path:
    path = settings_path(path_override)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(_to_json(settings), indent=2, sort_keys=True) + "\n", encoding="utf-8")
        tmp.replace(path)
    except OSError as e:
        raise InstallError(f"Could not write settings file {path}: {e}", phase="settings") from e

    # Best-effort permissions hardening (may hold a GitHub token).
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def merge_settings(
    base: InstallerSettings,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> InstallerSettings:
    """
    Resolve the effective settings for one run.

    Precedence: explicit overrides (CLI flags) > environment > settings file > defaults.
    ``None`` values in ``overrides`` mean "not given" and never clobber lower layers.
    """
    environ = os.environ if env is None else env
    changes: dict[str, Any] = {}
    for var, name in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            changes[name] = _coerce(name, value)

    allowed = {f.name for f in fields(InstallerSettings)}
    for name, value in (overrides or {}).items():
        if name not in allowed:
            raise KeyError(f"Unknown setting: {name}")
        if value is None:
            continue
        changes[name] = _coerce(name, value)

    merged = replace(base, **changes)
    if merged.source not in SOURCE_KINDS:
        raise ValueError(f"source must be one of {', '.join(SOURCE_KINDS)}, got {merged.source!r}")
    return merged


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]

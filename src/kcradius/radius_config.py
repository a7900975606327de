from __future__ import annotations

import copy
import json
import os
import re
import secrets
import stat
import tempfile
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any

from .errors import InstallError, InvalidInput

DEFAULT_AUTH_PORT = 1812
DEFAULT_ACCOUNT_PORT = 1813
DEFAULT_COA_PORT = 3799
DEFAULT_THREADS = 8

# Keys the installer owns on re-runs. Everything else belongs to the operator.
MANAGED_KEYS = ("sharedSecret", "authPort", "accountPort", "externalDictionary")

_DIGITS = re.compile(r"[0-9]+")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


@dataclass(frozen=True)
class RadSecConfig:
    useRadSec: bool = False
    privateKey: str = "config/private.key"
    certificate: str = "config/public.crt"
    numberThreads: int = DEFAULT_THREADS


@dataclass(frozen=True)
class CoAConfig:
    useCoA: bool = False
    port: int = DEFAULT_COA_PORT


@dataclass(frozen=True)
class RadiusPluginConfig:
    """
    The plugin's ``radius.config`` document.

    Field names follow the JSON keys the plugin reads, so ``to_dict()`` is the
    on-disk shape with no renaming.
    """

    sharedSecret: str
    authPort: int = DEFAULT_AUTH_PORT
    accountPort: int = DEFAULT_ACCOUNT_PORT
    numberThreads: int = DEFAULT_THREADS
    useUdpRadius: bool = True
    externalDictionary: str | None = None
    otpWithoutPassword: tuple[str, ...] = ()
    radsec: RadSecConfig = field(default_factory=RadSecConfig)
    coa: CoAConfig = field(default_factory=CoAConfig)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["otpWithoutPassword"] = list(self.otpWithoutPassword)
        return data

    def managed_values(self) -> dict[str, Any]:
        return {key: getattr(self, key) for key in MANAGED_KEYS}

    def validated(self) -> "RadiusPluginConfig":
        return replace(
            self,
            sharedSecret=validate_secret(self.sharedSecret),
            authPort=validate_port(self.authPort, name="authPort"),
            accountPort=validate_port(self.accountPort, name="accountPort"),
            numberThreads=validate_count(self.numberThreads, name="numberThreads"),
            radsec=replace(self.radsec, numberThreads=validate_count(self.radsec.numberThreads, name="radsec.numberThreads")),
            coa=replace(self.coa, port=validate_port(self.coa.port, name="coa.port")),
        )


def generate_secret(nbytes: int = 48) -> str:
    # URL-safe base64 alphabet: no quotes, backslashes or control characters.
    return secrets.token_urlsafe(nbytes)


def validate_secret(value: Any) -> str:
    if not isinstance(value, str) or value == "":
        raise InvalidInput("Shared secret must be a non-empty string.")
    if _CONTROL_CHARS.search(value):
        raise InvalidInput("Shared secret must not contain control characters.")
    return value


def _parse_int(value: Any, *, name: str) -> int:
    if isinstance(value, bool):
        raise InvalidInput(f"{name} must be an integer, got {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("-") and _DIGITS.fullmatch(text[1:]):
            return -int(text[1:])
        if _DIGITS.fullmatch(text):
            return int(text)
    raise InvalidInput(f"{name} must be an integer, got {value!r}.")


def validate_port(value: Any, *, name: str = "port") -> int:
    port = _parse_int(value, name=name)
    if not 1 <= port <= 65535:
        raise InvalidInput(f"{name} must be between 1 and 65535, got {port}.")
    return port


def validate_count(value: Any, *, name: str = "count") -> int:
    count = _parse_int(value, name=name)
    if count < 1:
        raise InvalidInput(f"{name} must be at least 1, got {count}.")
    return count


def merge_config(existing: dict[str, Any] | None, desired: RadiusPluginConfig) -> dict[str, Any]:
    """
    Structural merge of ``desired`` into an existing ``radius.config`` document.

    With no existing document the full desired config is returned. Otherwise
    only ``MANAGED_KEYS`` are overwritten; key order of the existing document
    is kept and new keys are appended.
    """
    if existing is None:
        return desired.to_dict()
    merged = copy.deepcopy(existing)
    merged.update(desired.managed_values())
    return merged


def load_config_document(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise InstallError(f"Could not read {path}: {e}", phase="config") from e
    except UnicodeDecodeError as e:
        raise InvalidInput(f"Existing {path} is not UTF-8 text: {e}") from e
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidInput(f"Existing {path} is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise InvalidInput(f"Existing {path} is not a JSON object.")
    return raw


def dump_config_document(data: dict[str, Any]) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def write_config_atomic(path: Path, data: dict[str, Any]) -> Path:
    """Write ``data`` to ``path`` via a 0600 temp file in the same directory, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            os.fchmod(fh.fileno(), stat.S_IRUSR | stat.S_IWUSR)
            fh.write(dump_config_document(data))
            fh.flush()
            os.fsync(fh.fileno())
        tmp.replace(path)
    finally:
        if tmp.exists():
            tmp.unlink()
    enforce_permissions(path)
    return path


def enforce_permissions(path: Path) -> None:
    os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)

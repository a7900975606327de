"""
Host collaborators: the only place the installer shells out.

Every command goes through ``run_command`` so logging, timeouts and
redaction are handled once.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from .config import DEFAULT_KEYCLOAK_HOME
from .errors import (
    DependencyInstallError,
    MissingHostInstallation,
    PrivilegeError,
    ServiceConvergenceError,
)

logger = logging.getLogger(__name__)

BASE_PACKAGES = ("curl", "jq", "openssl", "iproute2", "ca-certificates", "unzip")
SOURCE_PACKAGES = ("git", "maven")

# Package names that differ on RPM-based hosts.
_RPM_NAMES = {"iproute2": "iproute"}

_OUTPUT_TAIL = 2000


@dataclass(frozen=True)
class CommandResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    elapsed_ms: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def detail(self) -> str:
        text = (self.stderr or self.stdout).strip()
        return text[-_OUTPUT_TAIL:] if text else f"exit {self.returncode}"


def _display(args: Sequence[str], redact: Iterable[str]) -> str:
    hidden = {r for r in redact if r}
    return " ".join("***" if a in hidden else a for a in args)


def run_command(
    args: Sequence[str],
    *,
    timeout: float | None = 600,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    redact: Iterable[str] = (),
) -> CommandResult:
    """Run ``args`` without a shell and capture its output.

    Missing executables and timeouts are reported as failed results with
    returncode 127 / 124 (126 if the file cannot be executed) rather than
    raised, so callers map every failure to their own phase error.
    """
    shown = _display(args, redact)
    logger.debug("Executing: %s (cwd=%s)", shown, cwd)
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    start = time.monotonic()
    try:
        proc = subprocess.run(
            list(args),
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=str(cwd) if cwd else None,
            env=full_env,
        )
    except FileNotFoundError:
        return CommandResult(tuple(args), 127, "", f"command not found: {args[0]}", 0)
    except OSError as e:
        return CommandResult(tuple(args), 126, "", f"cannot execute {args[0]}: {e}", 0)
    except subprocess.TimeoutExpired:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        return CommandResult(tuple(args), 124, "", f"timed out after {timeout}s: {shown}", elapsed_ms)

    elapsed_ms = int((time.monotonic() - start) * 1000)
    result = CommandResult(tuple(args), proc.returncode, proc.stdout or "", proc.stderr or "", elapsed_ms)
    if result.ok:
        logger.debug("Finished in %dms: %s", elapsed_ms, shown)
    else:
        logger.debug("Exit %d after %dms: %s", proc.returncode, elapsed_ms, shown)
    return result


def require_root() -> None:
    if os.geteuid() != 0:
        raise PrivilegeError("Must run as root to modify Keycloak providers and restart the service.")


def detect_keycloak_home(configured: Path | None = None) -> Path:
    home = configured if configured is not None else DEFAULT_KEYCLOAK_HOME
    kc_sh = home / "bin" / "kc.sh"
    if not home.is_dir():
        hint = "" if configured is not None else " Set KEYCLOAK_HOME or install Keycloak to /opt/keycloak."
        raise MissingHostInstallation(f"Keycloak not found at {home}.{hint}")
    if not (kc_sh.is_file() and os.access(kc_sh, os.X_OK)):
        raise MissingHostInstallation(f"kc.sh not found or not executable: {kc_sh}")
    return home


class PackageManager:
    """Install system packages with whichever of apt-get, dnf or yum is present."""

    def __init__(self, tool: str | None = None) -> None:
        self._tool = tool

    @property
    def tool(self) -> str:
        if self._tool is None:
            self._tool = self.detect()
        return self._tool

    @staticmethod
    def detect() -> str:
        for tool in ("apt-get", "dnf", "yum"):
            if shutil.which(tool):
                return tool
        raise DependencyInstallError("No supported package manager found (apt-get, dnf, yum).")

    def _names(self, packages: Iterable[str]) -> list[str]:
        if self.tool == "apt-get":
            return list(packages)
        return [_RPM_NAMES.get(p, p) for p in packages]

    def install(self, packages: Iterable[str]) -> None:
        names = self._names(packages)
        if not names:
            return
        if self.tool == "apt-get":
            env = {"DEBIAN_FRONTEND": "noninteractive"}
            update = run_command(["apt-get", "update", "-y"], env=env)
            if not update.ok:
                raise DependencyInstallError(f"apt-get update failed: {update.detail()}")
            result = run_command(["apt-get", "install", "-y", *names], env=env)
        else:
            result = run_command([self.tool, "install", "-y", *names])
        if not result.ok:
            raise DependencyInstallError(f"{self.tool} install {' '.join(names)} failed: {result.detail()}")


class KeycloakService:
    """Keycloak's ``kc.sh build`` plus systemd control for its unit."""

    def __init__(self, home: Path, *, unit: str = "keycloak", build_timeout: float = 900) -> None:
        self.home = home
        self.unit = unit
        self.build_timeout = build_timeout

    @property
    def kc_sh(self) -> Path:
        return self.home / "bin" / "kc.sh"

    def build(self) -> None:
        result = run_command([str(self.kc_sh), "build"], timeout=self.build_timeout, cwd=self.home)
        if not result.ok:
            raise ServiceConvergenceError(f"{self.kc_sh} build failed: {result.detail()}")

    def has_unit(self) -> bool:
        result = run_command(["systemctl", "list-unit-files", f"{self.unit}.service", "--no-legend"])
        if not result.ok:
            return False
        return any(line.split()[:1] == [f"{self.unit}.service"] for line in result.stdout.splitlines())

    def restart(self) -> bool:
        """Restart the unit. Returns False when no such unit exists (manual restart needed)."""
        if not self.has_unit():
            return False
        result = run_command(["systemctl", "restart", self.unit], timeout=300)
        if not result.ok:
            raise ServiceConvergenceError(f"systemctl restart {self.unit} failed: {result.detail()}")
        return True

    def status(self) -> str:
        result = run_command(["systemctl", "--no-pager", "-l", "status", self.unit])
        return result.stdout.strip()

    def logs(self, *, lines: int = 200, contains: str | None = None) -> list[str]:
        result = run_command(["journalctl", "-u", self.unit, "-n", str(lines), "--no-pager", "-o", "cat"])
        if not result.ok:
            logger.warning("journalctl for %s failed: %s", self.unit, result.detail())
            return []
        entries = result.stdout.splitlines()
        if contains:
            entries = [e for e in entries if contains in e]
        return entries


def probe_listeners(ports: Iterable[int]) -> dict[int, list[str]] | None:
    """Map each port to the ``ss -lunp`` lines bound to it, or None if ``ss`` is unusable."""
    result = run_command(["ss", "-lunp"], timeout=30)
    if not result.ok:
        return None
    found: dict[int, list[str]] = {}
    for port in ports:
        pattern = re.compile(rf":{port}\b")
        found[port] = [line for line in result.stdout.splitlines() if pattern.search(line)]
    return found

from __future__ import annotations

import logging
from pathlib import Path

from .errors import FetchError, InstallError
from .host import run_command

logger = logging.getLogger(__name__)

DEFAULT_WORK_DIR = Path("/usr/local/src/keycloak-radius-plugin")
MAVEN_ARGS = ("mvn", "-B", "-q", "-DskipTests", "package")

_SKIP_DIRS = {".git", "node_modules", ".m2"}


class SourceBuilder:
    """Clone or update the plugin repository and build it with Maven."""

    def __init__(self, url: str, *, ref: str | None = None, work_dir: Path | None = None, build_timeout: float = 1800) -> None:
        self.url = url
        self.ref = ref
        self.work_dir = work_dir or DEFAULT_WORK_DIR
        self.build_timeout = build_timeout

    def checkout(self) -> Path:
        if (self.work_dir / ".git").is_dir():
            logger.info("Updating checkout %s", self.work_dir)
            fetch = run_command(
                ["git", "-C", str(self.work_dir), "fetch", "--depth", "1", "origin", self.ref or "HEAD"],
                timeout=600,
            )
            if not fetch.ok:
                raise FetchError(f"git fetch {self.url} failed: {fetch.detail()}", url=self.url)
            reset = run_command(["git", "-C", str(self.work_dir), "reset", "--hard", "FETCH_HEAD"])
            if not reset.ok:
                raise FetchError(f"git reset in {self.work_dir} failed: {reset.detail()}", url=self.url)
            return self.work_dir

        logger.info("Cloning %s into %s", self.url, self.work_dir)
        self.work_dir.parent.mkdir(parents=True, exist_ok=True)
        args = ["git", "clone", "--depth", "1"]
        if self.ref:
            args += ["--branch", self.ref]
        args += [self.url, str(self.work_dir)]
        clone = run_command(args, timeout=600)
        if not clone.ok:
            raise FetchError(f"git clone {self.url} failed: {clone.detail()}", url=self.url)
        return self.work_dir

    def build(self) -> list[Path]:
        """Run the Maven build and return every jar under a ``target/`` directory."""
        self.checkout()
        logger.info("Running %s in %s", " ".join(MAVEN_ARGS), self.work_dir)
        result = run_command(list(MAVEN_ARGS), timeout=self.build_timeout, cwd=self.work_dir)
        if not result.ok:
            raise InstallError(f"Maven build in {self.work_dir} failed: {result.detail()}", phase="build")
        return find_built_jars(self.work_dir)


def find_built_jars(root: Path) -> list[Path]:
    jars: list[Path] = []
    for path in root.rglob("*.jar"):
        rel_parts = path.relative_to(root).parts
        if any(part in _SKIP_DIRS for part in rel_parts):
            continue
        if len(rel_parts) >= 2 and rel_parts[-2] == "target":
            jars.append(path)
    return sorted(jars, key=lambda p: str(p.relative_to(root)))

from __future__ import annotations

import fcntl
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator, Protocol

from .assets import PRIMARY_PATTERNS, SECONDARY_PATTERNS, Release, match_name, select_assets
from .config import InstallerSettings
from .errors import InstallError, NoArtifactFound, ServiceConvergenceError, VerificationWarning
from .host import BASE_PACKAGES, SOURCE_PACKAGES, detect_keycloak_home, probe_listeners, require_root
from .providers import (
    PlacedArtifact,
    clean_stale_artifacts,
    commit_placement,
    extract_artifact,
    place_artifact,
    revert_placement,
)
from .radius_config import (
    RadiusPluginConfig,
    enforce_permissions,
    load_config_document,
    merge_config,
    write_config_atomic,
)

logger = logging.getLogger(__name__)


class ReleaseSource(Protocol):
    def resolve_release(self, tag: str | None = None) -> Release:
        ...

    def download(self, url: str, dest: Path) -> Path:
        ...


class ArtifactBuilder(Protocol):
    def build(self) -> list[Path]:
        ...


class ServiceControl(Protocol):
    def build(self) -> None:
        ...

    def restart(self) -> bool:
        ...

    def status(self) -> str:
        ...

    def logs(self, *, lines: int = 200, contains: str | None = None) -> list[str]:
        ...


class PackageInstaller(Protocol):
    def install(self, packages: Iterable[str]) -> None:
        ...


ListenerProbe = Callable[[Iterable[int]], "dict[int, list[str]] | None"]


@dataclass(frozen=True)
class ReconcileResult:
    tag: str
    artifacts: tuple[str, ...]
    installed: tuple[Path, ...]
    removed: tuple[Path, ...]
    config_path: Path
    config_created: bool
    restarted: bool
    warnings: tuple[str, ...]
    listeners: tuple[str, ...]


@contextmanager
def install_lock(path: Path) -> Iterator[None]:
    """Exclusive advisory lock for a whole run; a second run fails instead of waiting."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(path, "a+", encoding="utf-8")
    except OSError as e:
        raise InstallError(f"Could not open lock file {path}: {e}", phase="lock") from e
    try:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise InstallError(f"Another kc-radius run holds the lock {path}", phase="lock") from e
        except OSError as e:
            raise InstallError(f"Could not lock {path}: {e}", phase="lock") from e
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()


class Reconciler:
    """
    Converge a Keycloak host to "RADIUS plugin installed and configured".

    Order is fixed: dependencies, artifact resolution, placement, stale-jar
    cleanup, config merge, permission enforcement, service build/restart,
    listener verification. Mutating steps register compensations which run
    in reverse when a later step before service convergence fails.
    """

    def __init__(
        self,
        settings: InstallerSettings,
        *,
        service_factory: Callable[[Path], ServiceControl],
        releases: ReleaseSource | None = None,
        builder: ArtifactBuilder | None = None,
        packages: PackageInstaller | None = None,
        probe: ListenerProbe = probe_listeners,
        check_privileges: bool = True,
    ) -> None:
        if settings.source == "release" and releases is None:
            raise ValueError("A release source is required when source='release'")
        if settings.source == "source" and builder is None:
            raise ValueError("An artifact builder is required when source='source'")
        self.settings = settings
        self.service_factory = service_factory
        self.releases = releases
        self.builder = builder
        self.packages = packages
        self.probe = probe
        self.check_privileges = check_privileges
        self._compensations: list[tuple[str, Callable[[], None]]] = []
        self._warnings: list[str] = []

    def reconcile(self, desired: RadiusPluginConfig) -> ReconcileResult:
        desired = desired.validated()
        if self.check_privileges:
            require_root()
        home = detect_keycloak_home(self.settings.keycloak_home)
        providers_dir = self.settings.providers_dir()
        config_path = self.settings.radius_config_path()
        logger.info("Keycloak home: %s", home)
        logger.info("Providers dir: %s", providers_dir)
        logger.info("Config file: %s", config_path)

        self._compensations = []
        self._warnings = []
        with install_lock(self.settings.lock_path()):
            self._install_dependencies()
            placed: list[PlacedArtifact] = []
            try:
                with tempfile.TemporaryDirectory(prefix="kc-radius-") as td:
                    tag, staged = self._resolve_artifacts(Path(td))
                    placed = self._place(staged, providers_dir)
                removed = self._clean(providers_dir)
                created = self._write_config(config_path, desired)
            except OSError as e:
                self._rollback()
                raise InstallError(f"Filesystem error: {e}") from e
            except (Exception, KeyboardInterrupt):
                self._rollback()
                raise
            for item in placed:
                commit_placement(item)

            service = self.service_factory(home)
            restarted = self._converge(service, desired)
            listeners = self._verify(desired) if self.settings.verify else ()

        logger.info("Done. The shared secret is stored in %s (sharedSecret).", config_path)
        return ReconcileResult(
            tag=tag,
            artifacts=tuple(p.path.name for p in placed),
            installed=tuple(p.path for p in placed),
            removed=tuple(removed),
            config_path=config_path,
            config_created=created,
            restarted=restarted,
            warnings=tuple(self._warnings),
            listeners=listeners,
        )

    def _warn(self, warning: Warning) -> None:
        message = str(warning)
        logger.warning(message)
        self._warnings.append(message)

    def _install_dependencies(self) -> None:
        if not self.settings.install_packages or self.packages is None:
            logger.info("Skipping system package installation")
            return
        wanted = list(BASE_PACKAGES)
        if self.settings.source == "source":
            wanted += list(SOURCE_PACKAGES)
        logger.info("Installing dependencies (%s)", ", ".join(wanted))
        self.packages.install(wanted)
        logger.info("Dependencies installed")

    def _resolve_artifacts(self, stage: Path) -> tuple[str, list[Path]]:
        if self.settings.source == "source" and self.builder is not None:
            return self._artifacts_from_source(self.builder)
        if self.settings.source == "release" and self.releases is not None:
            return self._artifacts_from_release(self.releases, stage)
        raise RuntimeError(f"No artifact source configured for source={self.settings.source!r}")

    def _artifacts_from_release(self, releases: ReleaseSource, stage: Path) -> tuple[str, list[Path]]:
        if self.settings.tag:
            logger.info("Using pinned release tag %s", self.settings.tag)
        else:
            logger.info("Resolving latest release of %s", self.settings.repo)
        release = releases.resolve_release(self.settings.tag)
        logger.info("Release tag: %s", release.tag_name)

        selection = select_assets(release, include_secondary=self.settings.include_secondary)
        staged: list[Path] = []
        for asset in (selection.primary, selection.secondary):
            if asset is None:
                continue
            logger.info("Downloading %s", asset.download_url)
            staged.append(releases.download(asset.download_url, stage / asset.name))

        if selection.archive is not None:
            logger.info("Release ships no direct jar; extracting from %s", selection.archive.name)
            archive = releases.download(selection.archive.download_url, stage / selection.archive.name)
            extracted = stage / "extracted"
            if selection.primary is None:
                staged.append(extract_artifact(archive, extracted, patterns=PRIMARY_PATTERNS))
            if self.settings.include_secondary and selection.secondary is None:
                staged.append(extract_artifact(archive, extracted, patterns=SECONDARY_PATTERNS))
        return release.tag_name, staged

    def _artifacts_from_source(self, builder: ArtifactBuilder) -> tuple[str, list[Path]]:
        logger.info("Building plugin from %s", self.settings.source_url)
        jars = builder.build()
        by_name = {str(p): p for p in jars}

        staged: list[Path] = []
        primary = match_name(by_name, PRIMARY_PATTERNS)
        if primary is None:
            raise NoArtifactFound(f"Build produced no radius-plugin jar (candidates: {len(jars)})")
        staged.append(by_name[primary])
        if self.settings.include_secondary:
            secondary = match_name(by_name, SECONDARY_PATTERNS)
            if secondary is None:
                raise NoArtifactFound("Build produced no mikrotik-radius-plugin jar")
            staged.append(by_name[secondary])
        return f"source:{self.settings.source_ref or 'HEAD'}", staged

    def _place(self, staged: list[Path], providers_dir: Path) -> list[PlacedArtifact]:
        placed: list[PlacedArtifact] = []
        for source in staged:
            logger.info("Installing %s into %s", source.name, providers_dir)
            item = place_artifact(source, providers_dir)
            placed.append(item)
            self._compensations.append((f"remove {item.path}", lambda item=item: revert_placement(item)))
        return placed

    def _clean(self, providers_dir: Path) -> list[Path]:
        logger.info("Removing sources/javadoc/tests jars from %s", providers_dir)
        return clean_stale_artifacts(providers_dir)

    def _write_config(self, path: Path, desired: RadiusPluginConfig) -> bool:
        existing = load_config_document(path)
        try:
            previous = path.read_bytes() if existing is not None else None
        except OSError as e:
            raise InstallError(f"Could not read {path}: {e}", phase="config") from e
        if existing is None:
            logger.info("Creating %s", path)
        else:
            logger.info("Updating managed keys in existing %s", path)

        document = merge_config(existing, desired)
        self._compensations.append((f"restore {path}", lambda: _restore_file(path, previous)))
        try:
            write_config_atomic(path, document)
        except OSError as e:
            raise InstallError(f"Could not write {path}: {e}", phase="config") from e
        logger.info("Wrote %s (mode 0600)", path)
        return existing is None

    def _rollback(self) -> None:
        if not self.settings.rollback_on_failure:
            self._compensations = []
            return
        for label, undo in reversed(self._compensations):
            logger.warning("Rolling back: %s", label)
            try:
                undo()
            except OSError as e:
                logger.error("Rollback step %r failed: %s", label, e)
        self._compensations = []

    def _converge(self, service: ServiceControl, desired: RadiusPluginConfig) -> bool:
        try:
            logger.info("Running kc.sh build")
            service.build()
            logger.info("Restarting %s", self.settings.service_name)
            restarted = service.restart()
        except ServiceConvergenceError:
            logger.error("Service convergence failed; collecting diagnostics")
            if self.settings.verify:
                self._verify(desired)
            for line in service.logs(lines=50):
                logger.error("  %s", line)
            raise

        if restarted:
            status = service.status()
            if status:
                logger.info("%s", status)
        else:
            self._warn(UserWarning(f"{self.settings.service_name}.service not found; restart Keycloak manually."))
        return restarted

    def _verify(self, desired: RadiusPluginConfig) -> tuple[str, ...]:
        ports = (desired.authPort, desired.accountPort)
        logger.info("Checking UDP listeners on %s/%s", *ports)
        found = self.probe(ports)
        if found is None:
            self._warn(VerificationWarning("Could not run 'ss'; listener check skipped."))
            return ()
        lines: list[str] = []
        for port in ports:
            bound = found.get(port) or []
            if not bound:
                self._warn(VerificationWarning(f"No UDP listener on port {port} yet; Keycloak may still be starting."))
            lines.extend(bound)
        return tuple(lines)


def _restore_file(path: Path, previous: bytes | None) -> None:
    if previous is None:
        path.unlink(missing_ok=True)
        return
    tmp = path.with_name(f".{path.name}.restore")
    tmp.write_bytes(previous)
    enforce_permissions(tmp)
    tmp.replace(path)

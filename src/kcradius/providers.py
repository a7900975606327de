from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .assets import PRIMARY_PATTERNS, is_non_runtime, match_name
from .errors import InstallError, NoArtifactFound

logger = logging.getLogger(__name__)

STALE_GLOBS = ("*-tests.jar", "*-test.jar", "*-sources.jar", "*-javadoc.jar")


@dataclass(frozen=True)
class PlacedArtifact:
    path: Path
    backup: Path | None  # previous same-named file, kept until the run commits


def ensure_dir(path: Path) -> Path:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise InstallError(f"Could not create directory: {path} ({e})", phase="place") from e
    if not path.is_dir():
        raise InstallError(f"Not a directory: {path}", phase="place")
    return path


def list_artifacts(providers_dir: Path) -> list[str]:
    if not providers_dir.is_dir():
        return []
    return sorted(p.name for p in providers_dir.iterdir() if p.is_file() and p.suffix == ".jar")


def clean_stale_artifacts(providers_dir: Path) -> list[Path]:
    """Remove sources/javadoc/tests jars. Running it again removes nothing."""
    removed: list[Path] = []
    if not providers_dir.is_dir():
        return removed
    for pattern in STALE_GLOBS:
        for path in sorted(providers_dir.glob(pattern)):
            if not path.is_file():
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise InstallError(f"Could not remove stale jar {path}: {e}", phase="clean") from e
            logger.info("Removed non-runtime jar %s", path)
            removed.append(path)
    return removed


def place_artifact(source: Path, providers_dir: Path, *, name: str | None = None) -> PlacedArtifact:
    """
    Copy ``source`` verbatim into ``providers_dir`` under ``name``.

    The copy lands under a hidden temporary name first and is renamed over the
    target, so a concurrent Keycloak start never sees a truncated jar. An
    existing same-named jar is preserved as a backup for rollback.
    """
    ensure_dir(providers_dir)
    target = providers_dir / (name or source.name)
    if is_non_runtime(target.name):
        raise InstallError(f"Refusing to install non-runtime artifact: {target.name}", phase="place")

    backup: Path | None = None
    if target.exists():
        backup = providers_dir / f".{target.name}.kc-radius-backup"
        try:
            shutil.copy2(target, backup)
        except OSError as e:
            raise InstallError(f"Could not back up {target} to {backup}: {e}", phase="place") from e

    try:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".part", dir=providers_dir)
    except OSError as e:
        if backup is not None:
            backup.unlink(missing_ok=True)
        raise InstallError(f"Could not create a temporary file in {providers_dir}: {e}", phase="place") from e
    os.close(fd)
    tmp = Path(tmp_name)
    try:
        shutil.copyfile(source, tmp)
        os.chmod(tmp, 0o644)
        tmp.replace(target)
    except OSError as e:
        if backup is not None:
            backup.unlink(missing_ok=True)
        raise InstallError(f"Could not place {source} into {providers_dir}: {e}", phase="place") from e
    finally:
        tmp.unlink(missing_ok=True)
    return PlacedArtifact(path=target, backup=backup)


def revert_placement(placed: PlacedArtifact) -> None:
    if placed.backup is not None and placed.backup.exists():
        placed.backup.replace(placed.path)
        logger.info("Restored previous %s", placed.path)
        return
    placed.path.unlink(missing_ok=True)
    logger.info("Removed newly placed %s", placed.path)


def commit_placement(placed: PlacedArtifact) -> None:
    if placed.backup is None:
        return
    try:
        placed.backup.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove backup %s: %s", placed.backup, e)


def _safe_members(zf: zipfile.ZipFile) -> list[zipfile.ZipInfo]:
    members: list[zipfile.ZipInfo] = []
    for info in zf.infolist():
        name = info.filename
        if not name:
            continue
        if name.startswith("/") or re.match(r"^[A-Za-z]:", name):
            raise InstallError(f"Archive contains an absolute path entry: {name!r}", phase="extract")
        if ".." in name.replace("\\", "/").split("/"):
            raise InstallError(f"Archive contains an invalid path entry: {name!r}", phase="extract")
        members.append(info)
    return members


def extract_artifact(
    archive: Path,
    dest_dir: Path,
    *,
    patterns: Iterable[re.Pattern[str]] = PRIMARY_PATTERNS,
) -> Path:
    """
    Extract the first runtime jar in ``archive`` matching ``patterns`` into ``dest_dir``.

    Members are considered in sorted order; sources/javadoc/tests jars are skipped.
    """
    try:
        zf = zipfile.ZipFile(archive, "r")
    except zipfile.BadZipFile as e:
        raise NoArtifactFound(f"Release archive is not a valid zip: {archive}") from e
    except OSError as e:
        raise InstallError(f"Could not open archive {archive}: {e}", phase="extract") from e

    with zf:
        members = {info.filename: info for info in _safe_members(zf) if not info.is_dir()}
        chosen = match_name(sorted(members), patterns)
        if chosen is None:
            raise NoArtifactFound(f"No radius-plugin jar inside archive {archive.name}")

        ensure_dir(dest_dir)
        target = dest_dir / Path(chosen).name
        try:
            with zf.open(members[chosen], "r") as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)
        except OSError as e:
            raise InstallError(f"Could not extract {chosen} to {target}: {e}", phase="extract") from e
    logger.info("Extracted %s from %s", chosen, archive.name)
    return target

from __future__ import annotations

import enum
import posixpath
import re
from dataclasses import dataclass
from typing import Any, Iterable

from .errors import NoArtifactFound

# Anchored, case-sensitive, matched against the bare filename only.
PRIMARY_PATTERNS = (
    re.compile(r"radius-plugin-.*\.jar"),
    re.compile(r"keycloak-radius-plugin.*\.jar"),
)
SECONDARY_PATTERNS = (re.compile(r"mikrotik-radius-plugin.*\.jar"),)
ARCHIVE_PATTERNS = (
    re.compile(r"keycloak-radius.*\.zip"),
    re.compile(r".*\.zip"),
)

_CLASSIFIER_SUFFIXES = (
    ("-sources.jar", "sources"),
    ("-javadoc.jar", "javadoc"),
    ("-tests.jar", "tests"),
    ("-test.jar", "tests"),
)


class AssetKind(str, enum.Enum):
    JAR = "jar"
    ZIP = "zip"
    SOURCES = "sources"
    JAVADOC = "javadoc"
    TESTS = "tests"
    OTHER = "other"


NON_RUNTIME_KINDS = frozenset({AssetKind.SOURCES, AssetKind.JAVADOC, AssetKind.TESTS})


def classify(name: str) -> AssetKind:
    base = posixpath.basename(name)
    for suffix, kind in _CLASSIFIER_SUFFIXES:
        if base.endswith(suffix):
            return AssetKind(kind)
    if base.endswith(".jar"):
        return AssetKind.JAR
    if base.endswith(".zip"):
        return AssetKind.ZIP
    return AssetKind.OTHER


def is_non_runtime(name: str) -> bool:
    return classify(name) in NON_RUNTIME_KINDS


@dataclass(frozen=True)
class ReleaseAsset:
    name: str
    download_url: str
    kind: AssetKind
    size: int | None = None

    @classmethod
    def from_name(cls, name: str, download_url: str, size: int | None = None) -> "ReleaseAsset":
        return cls(name=name, download_url=download_url, kind=classify(name), size=size)


@dataclass(frozen=True)
class Release:
    tag_name: str
    assets: tuple[ReleaseAsset, ...]
    html_url: str | None = None


@dataclass(frozen=True)
class AssetSelection:
    primary: ReleaseAsset | None
    secondary: ReleaseAsset | None
    archive: ReleaseAsset | None  # only set when a jar has to come out of a zip


def parse_release(obj: Any) -> Release:
    if not isinstance(obj, dict):
        raise ValueError("Release descriptor must be a JSON object")
    tag = obj.get("tag_name")
    if not isinstance(tag, str) or not tag.strip() or tag == "null":
        raise ValueError("Release descriptor has no tag_name")

    assets: list[ReleaseAsset] = []
    for item in obj.get("assets") or []:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        url = item.get("browser_download_url")
        if not isinstance(name, str) or not isinstance(url, str):
            continue
        size = item.get("size")
        assets.append(ReleaseAsset.from_name(name, url, size if isinstance(size, int) else None))

    html_url = obj.get("html_url")
    return Release(tag_name=tag.strip(), assets=tuple(assets), html_url=html_url if isinstance(html_url, str) else None)


def match_name(names: Iterable[str], patterns: Iterable[re.Pattern[str]]) -> str | None:
    """
    Return the first runtime jar/zip name matching the earliest pattern.

    Patterns are tried in order; within a pattern the input order wins.
    Names are reduced to their basename before matching, and
    sources/javadoc/tests variants are dropped up front.
    """
    candidates = [n for n in names if not is_non_runtime(n)]
    for pattern in patterns:
        for name in candidates:
            if pattern.fullmatch(posixpath.basename(name)):
                return name
    return None


def _pick(assets: tuple[ReleaseAsset, ...], patterns: Iterable[re.Pattern[str]], kind: AssetKind) -> ReleaseAsset | None:
    eligible = [a for a in assets if a.kind is kind]
    by_name = {a.name: a for a in eligible}
    name = match_name([a.name for a in eligible], patterns)
    return by_name[name] if name is not None else None


def select_assets(release: Release, *, include_secondary: bool = False) -> AssetSelection:
    primary = _pick(release.assets, PRIMARY_PATTERNS, AssetKind.JAR)
    secondary = _pick(release.assets, SECONDARY_PATTERNS, AssetKind.JAR) if include_secondary else None

    archive = None
    if primary is None or (include_secondary and secondary is None):
        archive = _pick(release.assets, ARCHIVE_PATTERNS, AssetKind.ZIP)

    if primary is None and archive is None:
        names = ", ".join(a.name for a in release.assets) or "<none>"
        raise NoArtifactFound(f"No radius-plugin jar or zip asset in release {release.tag_name} (assets: {names})")
    if include_secondary and secondary is None and archive is None:
        raise NoArtifactFound(f"No mikrotik-radius-plugin jar in release {release.tag_name}")

    return AssetSelection(primary=primary, secondary=secondary, archive=archive)

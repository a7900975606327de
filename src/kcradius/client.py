from __future__ import annotations

import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any
from urllib.parse import quote, urlsplit

import httpx

from ._version import __version__
from .assets import Release, parse_release
from .config import DEFAULT_API_URL, DEFAULT_REPO, DEFAULT_TIMEOUT_S
from .errors import FetchError

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_S = 0.75

_RETRY_STATUS = frozenset({429, 500, 502, 503, 504})


def _origin(url: str) -> str | None:
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}".lower()


class GitHubReleaseClient:
    """
    Minimal GitHub releases client.

    Only the two endpoints the installer needs plus asset downloads. Transient
    failures (transport errors, 429 and 5xx) are retried a bounded number of
    times with linear backoff before surfacing as ``FetchError``.
    """

    def __init__(
        self,
        *,
        repo: str = DEFAULT_REPO,
        api_url: str = DEFAULT_API_URL,
        token: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_s: float = DEFAULT_BACKOFF_S,
    ) -> None:
        self.repo = repo
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.max_retries = max(1, max_retries)
        self.backoff_s = backoff_s

        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": f"kc-radius/{__version__}",
        }
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True, headers=headers)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "GitHubReleaseClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _repo_path(self) -> str:
        owner, _, name = self.repo.partition("/")
        return f"/repos/{quote(owner, safe='')}/{quote(name, safe='')}"

    def _auth_headers(self, url: str) -> dict[str, str]:
        # Asset downloads redirect to a CDN; the token only goes to the API origin.
        if self.token and _origin(url) == _origin(self.api_url):
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    def _sleep(self, attempt: int) -> None:
        time.sleep(self.backoff_s * attempt)

    def get_json(self, path: str) -> Any:
        url = path if path.startswith(("http://", "https://")) else f"{self.api_url}{path}"
        for attempt in range(1, self.max_retries + 1):
            try:
                resp = self._http.get(url, headers=self._auth_headers(url))
            except httpx.HTTPError as e:
                last_error = FetchError(f"Request failed for {url}: {e}", url=url)
            else:
                if resp.status_code < 400:
                    try:
                        return resp.json()
                    except ValueError as e:
                        raise FetchError(f"Invalid JSON from {url}: {e}", url=url) from e
                err = FetchError(f"HTTP {resp.status_code} for {url}", url=url, status_code=resp.status_code)
                if resp.status_code not in _RETRY_STATUS:
                    raise err
                last_error = err

            logger.warning("GET %s failed (attempt %d/%d): %s", url, attempt, self.max_retries, last_error)
            if attempt == self.max_retries:
                raise last_error
            self._sleep(attempt)
        raise FetchError(f"No request was attempted for {url}", url=url)

    def latest_tag(self) -> str:
        data = self.get_json(f"{self._repo_path()}/releases/latest")
        tag = data.get("tag_name") if isinstance(data, dict) else None
        if not isinstance(tag, str) or not tag.strip() or tag == "null":
            raise FetchError(f"Could not determine latest release tag for {self.repo}")
        return tag.strip()

    def release_by_tag(self, tag: str) -> Release:
        url = f"{self._repo_path()}/releases/tags/{quote(tag, safe='')}"
        data = self.get_json(url)
        try:
            return parse_release(data)
        except ValueError as e:
            raise FetchError(f"Malformed release descriptor for {self.repo}@{tag}: {e}", url=url) from e

    def resolve_release(self, tag: str | None = None) -> Release:
        if not tag:
            tag = self.latest_tag()
        return self.release_by_tag(tag)

    def download(self, url: str, dest: Path) -> Path:
        """
        Stream ``url`` into ``dest``.

        The body is written to a temporary file in ``dest``'s directory and
        renamed into place, so ``dest`` is either the previous file or the
        complete new one.
        """
        dest.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(1, self.max_retries + 1):
            fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".part", dir=dest.parent)
            tmp = Path(tmp_name)
            try:
                with os.fdopen(fd, "wb") as out:
                    with self._http.stream("GET", url, headers=self._auth_headers(url)) as resp:
                        if resp.status_code >= 400:
                            raise FetchError(f"HTTP {resp.status_code} for {url}", url=url, status_code=resp.status_code)
                        for chunk in resp.iter_bytes():
                            out.write(chunk)
                tmp.replace(dest)
                return dest
            except httpx.HTTPError as e:
                last_error = FetchError(f"Download failed for {url}: {e}", url=url)
            except FetchError as e:
                if e.status_code not in _RETRY_STATUS:
                    raise
                last_error = e
            finally:
                if tmp.exists():
                    tmp.unlink()

            logger.warning("Download %s failed (attempt %d/%d): %s", url, attempt, self.max_retries, last_error)
            if attempt == self.max_retries:
                raise last_error
            self._sleep(attempt)
        raise FetchError(f"No download was attempted for {url}", url=url)

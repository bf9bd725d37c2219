"""GitHub access: P2P branch listing, compatibility report, source archives.

The aikitoria fork of open-gpu-kernel-modules publishes P2P patches as
branches named ``<driver>-p2p`` (e.g. ``590.48.01-p2p``); there are no
releases.  Stock sources come from NVIDIA's tags of the same name as the
driver version.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import httpx
from tqdm import tqdm

import _console
from driver_version import version_key
from patch_errors import UpstreamUnavailable

P2P_SUFFIX = "-p2p"

# Safety stop for the Link-header walk.
_MAX_PAGES = 50


def branch_archive_url(settings, repo: str, branch: str) -> str:
    return f"{settings.archive_url}/{repo}/archive/refs/heads/{branch}.tar.gz"


def tag_archive_url(settings, repo: str, tag: str) -> str:
    return f"{settings.archive_url}/{repo}/archive/refs/tags/{tag}.tar.gz"


def compatible_versions(branch_names) -> list[str]:
    """Driver versions that have a P2P branch, oldest first."""
    versions = {name[:-len(P2P_SUFFIX)] for name in branch_names
                if name.endswith(P2P_SUFFIX) and len(name) > len(P2P_SUFFIX)}
    return sorted(versions, key=version_key)


@dataclass(frozen=True)
class CompatibilityReport:
    installed: str
    available: list[str]

    @property
    def compatible(self) -> bool:
        return self.installed in self.available

    @property
    def latest(self) -> str | None:
        return self.available[-1] if self.available else None


class GitHubClient:
    """Thin httpx wrapper around the endpoints the pipeline needs."""

    def __init__(self, settings, transport: httpx.BaseTransport | None = None):
        self.settings = settings
        self._client = httpx.Client(
            timeout=settings.timeout,
            follow_redirects=True,
            headers={"Accept": "application/vnd.github+json",
                     "User-Agent": "unraid-p2p-patch"},
            transport=transport,
        )

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self._client.close()

    def _get_page(self, url: str, params: dict | None) -> httpx.Response:
        try:
            response = self._client.get(url, params=params)
        except httpx.RequestError as e:
            raise UpstreamUnavailable(
                f"Failed to reach GitHub API ({e}). Check your internet connection.") from e
        if "rate limit" in response.text.lower():
            raise UpstreamUnavailable("GitHub API rate limit exceeded. Try again later.")
        if response.status_code != 200:
            raise UpstreamUnavailable(
                f"GitHub API returned HTTP {response.status_code} for {url}")
        return response

    def list_branches(self, repo: str) -> list[str]:
        """Every branch name in *repo*, following pagination."""
        url = f"{self.settings.api_url}/repos/{repo}/branches"
        params = {"per_page": self.settings.per_page}
        names = []
        for _ in range(_MAX_PAGES):
            response = self._get_page(url, params)
            if not response.content.strip():
                raise UpstreamUnavailable("Empty response from GitHub API.")
            try:
                page = response.json()
            except ValueError as e:
                raise UpstreamUnavailable(f"Unreadable response from GitHub API: {e}") from e
            if not isinstance(page, list):
                raise UpstreamUnavailable(f"Unexpected response from GitHub API: {page!r:.200}")
            names.extend(b["name"] for b in page if isinstance(b, dict) and "name" in b)

            next_url = response.links.get("next", {}).get("url")
            if not next_url:
                break
            # The next link already carries per_page and page.
            url, params = next_url, None
        else:
            _console.warn(f"Stopped listing {repo} branches after {_MAX_PAGES} pages; "
                          "the list may be incomplete.")

        if not names:
            raise UpstreamUnavailable("Empty response from GitHub API.")
        return names

    def archive_exists(self, url: str) -> bool:
        """Probe an archive URL without downloading it."""
        try:
            response = self._client.head(url)
        except httpx.RequestError as e:
            raise UpstreamUnavailable(f"Failed to reach {url}: {e}") from e
        return response.status_code == 200

    def download(self, url: str, dest: Path) -> Path:
        """Stream *url* into *dest* with a progress bar."""
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._client.stream("GET", url) as response:
                if response.status_code != 200:
                    raise UpstreamUnavailable(
                        f"Download of {url} failed with HTTP {response.status_code}")
                total = int(response.headers.get("content-length", 0)) or None
                with open(dest, "wb") as f, tqdm(
                    total=total, unit="B", unit_scale=True,
                    desc=dest.name, disable=None,
                ) as bar:
                    for chunk in response.iter_bytes():
                        f.write(chunk)
                        bar.update(len(chunk))
        except httpx.RequestError as e:
            raise UpstreamUnavailable(f"Download of {url} failed: {e}") from e
        return dest


def check_compatibility(client: GitHubClient, installed) -> CompatibilityReport:
    """Compare the installed driver against the fork's P2P branches."""
    repo = client.settings.patched_repo
    _console.info(f"Fetching P2P-patched branches from github.com/{repo} ...")
    available = compatible_versions(client.list_branches(repo))
    if not available:
        raise UpstreamUnavailable(
            f"No {P2P_SUFFIX} branches found in {repo}. The repo structure may have changed.")
    return CompatibilityReport(installed=str(installed), available=available)

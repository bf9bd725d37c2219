"""Obtain an open-gpu-kernel-modules source tree for the driver version.

Lookup order:
  1. --src-dir, used as given (a version mismatch only warns)
  2. a cached tree in the work dir whose version.mk matches exactly; an
     earlier download of the stock NVIDIA tag is not reused, so the P2P
     branch is looked for again
  3. a download: the aikitoria <driver>-p2p branch, else NVIDIA's <driver>
     tag (no P2P patch), else a fatal NoPatchAvailable
"""

from __future__ import annotations

import re
import shutil
from dataclasses import dataclass
from pathlib import Path

import _console
from archive_extract import extract_archive
from upstream_client import branch_archive_url, tag_archive_url
from patch_errors import NoPatchAvailable, SourceNotFound

SOURCE_NAME = "open-gpu-kernel-modules"
MANIFEST = "version.mk"
# Written into each download: where the tree came from.
ORIGIN_FILE = ".download-origin"

_MANIFEST_VERSION = re.compile(r"^\s*NVIDIA_VERSION\s*[:?]?=\s*(\S+)", re.MULTILINE)


@dataclass(frozen=True)
class SourceTree:
    path: Path
    version: str | None
    # explicit, cache, patched-branch, upstream-tag or planned
    origin: str

    @property
    def has_p2p(self) -> bool:
        return self.origin != "upstream-tag"


def manifest_version(path: Path) -> str | None:
    """NVIDIA_VERSION from a source tree's version.mk, or None."""
    try:
        text = (Path(path) / MANIFEST).read_text()
    except OSError:
        return None
    match = _MANIFEST_VERSION.search(text)
    return match.group(1) if match else None


def download_dir(work_dir: Path, driver) -> Path:
    return Path(work_dir) / f"{SOURCE_NAME}-{driver}"


def cache_candidates(work_dir: Path, driver) -> list[Path]:
    return [Path(work_dir) / SOURCE_NAME, download_dir(work_dir, driver)]


def _explicit(src_dir: Path, driver) -> SourceTree:
    if not src_dir.is_dir():
        raise SourceNotFound(f"--src-dir not found: {src_dir}")
    version = manifest_version(src_dir)
    if version != str(driver):
        _console.warn(f"Source version ({version}) does not match driver version ({driver}).")
        _console.warn("Proceeding anyway - make sure your source is correct.")
    return SourceTree(src_dir, version, "explicit")


def download_origin(path: Path) -> str | None:
    try:
        return (Path(path) / ORIGIN_FILE).read_text().strip() or None
    except OSError:
        return None


def _cached(work_dir: Path, driver) -> SourceTree | None:
    for candidate in cache_candidates(work_dir, driver):
        if not candidate.is_dir():
            continue
        if download_origin(candidate) == "upstream-tag":
            _console.info(f"Source at {candidate} is the stock NVIDIA tree, "
                          f"looking for {driver.patch_branch} again")
            continue
        version = manifest_version(candidate)
        if version == str(driver):
            _console.ok(f"Found matching source ({version}) at: {candidate}")
            return SourceTree(candidate, version, "cache")
        _console.warn(f"Source at {candidate} has version {version} (need {driver})")
    return None


def pick_archive(client, driver) -> tuple[str, str]:
    """Return (url, origin) of the best available source archive."""
    settings = client.settings
    branch_url = branch_archive_url(settings, settings.patched_repo, driver.patch_branch)
    if client.archive_exists(branch_url):
        return branch_url, "patched-branch"

    tag_url = tag_archive_url(settings, settings.upstream_repo, str(driver))
    if client.archive_exists(tag_url):
        _console.warn(f"{settings.patched_repo} branch '{driver.patch_branch}' not found - "
                      f"falling back to {settings.upstream_repo} (no P2P patch!)")
        _console.warn("Run --check to see which driver versions are supported.")
        return tag_url, "upstream-tag"

    raise NoPatchAvailable(
        f"Cannot find {SOURCE_NAME} for driver {driver}.\n"
        "  Run --check to see which driver versions have a P2P patch available.\n"
        f"  Or supply the source directly: --src-dir /path/to/{SOURCE_NAME}")


def _download(client, work_dir: Path, driver) -> SourceTree:
    url, origin = pick_archive(client, driver)
    target = download_dir(work_dir, driver)
    tarball = Path(work_dir) / f"{SOURCE_NAME}-{driver}.tar.gz"

    _console.info(f"Downloading {SOURCE_NAME} {driver} from {url}")
    if target.exists():
        shutil.rmtree(target)
    try:
        client.download(url, tarball)
        extract_archive(tarball, target, strip_components=1)
        (target / ORIGIN_FILE).write_text(origin + "\n")
    finally:
        tarball.unlink(missing_ok=True)

    version = manifest_version(target)
    if version != str(driver):
        _console.warn(f"Downloaded source reports version {version} (need {driver})")
    _console.ok(f"Source downloaded to: {target}")
    return SourceTree(target, version, origin)


def acquire_source(config, driver, client) -> SourceTree:
    """Resolve the source tree to build from."""
    if config.src_dir:
        return _explicit(Path(config.src_dir), driver)

    cached = _cached(config.work_dir, driver)
    if cached:
        return cached

    if config.dry_run:
        target = download_dir(config.work_dir, driver)
        _console.dry_run(f"Would download {SOURCE_NAME} {driver} "
                         f"({driver.patch_branch}, falling back to tag {driver}) into {target}")
        return SourceTree(target, None, "planned")

    return _download(client, config.work_dir, driver)

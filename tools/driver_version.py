"""Kernel and driver version detection.

Works out which kernel is running, which nvidia-driver plugin package is
installed for it, and which driver version that package carries.

Package layout written by the Unraid nvidia-driver plugin:

    <plugin-dir>/<short-kernel>/nvidia-<driver>-<kernel>-1.txz
    <plugin-dir>/<short-kernel>/nvidia-<driver>-<kernel>-1.txz.md5
"""

from __future__ import annotations

import platform
import re
from dataclasses import dataclass
from pathlib import Path

import _console
from patch_errors import PackageNotFound, VersionParseError

_TRIPLE = re.compile(r"[0-9]+\.[0-9]+\.[0-9]+")
_KERNEL = re.compile(r"^[0-9]+\.[0-9]+(\.[0-9]+)?")
_CHUNKS = re.compile(r"[0-9]+|[^0-9]+")

PACKAGE_GLOB = "nvidia-*.txz"
STAGING_SUFFIX = ".patched.txz"


def version_key(text):
    """Sort key that orders version strings like ``sort -V``.

    Numeric runs compare as integers, so 590.9.1 sorts before 590.10.0.
    """
    return tuple((0, int(c), "") if c.isdigit() else (1, 0, c)
                 for c in _CHUNKS.findall(text))


@dataclass(frozen=True)
class KernelVersion:
    release: str

    @classmethod
    def parse(cls, text: str) -> KernelVersion:
        text = text.strip()
        if not _KERNEL.match(text):
            raise VersionParseError(f"not a kernel version: {text!r}")
        return cls(text)

    @property
    def short(self) -> str:
        """Release without the local suffix: 6.12.54-Unraid -> 6.12.54."""
        return self.release.split("-", 1)[0]

    def __str__(self):
        return self.release


@dataclass(frozen=True)
class DriverVersion:
    text: str

    @classmethod
    def parse(cls, text: str) -> DriverVersion:
        text = text.strip()
        if not _TRIPLE.fullmatch(text):
            raise VersionParseError(f"not a driver version (expected N.N.N): {text!r}")
        return cls(text)

    @classmethod
    def from_package_name(cls, name: str) -> DriverVersion:
        """First N.N.N token in a package filename.

        nvidia-580.82.09-6.12.24-Unraid-1.txz -> 580.82.09
        """
        match = _TRIPLE.search(name)
        if not match:
            raise VersionParseError(f"no driver version in package name: {name}")
        return cls(match.group(0))

    @property
    def patch_branch(self) -> str:
        return f"{self.text}-p2p"

    def __lt__(self, other):
        if not isinstance(other, DriverVersion):
            return NotImplemented
        return version_key(self.text) < version_key(other.text)

    def __str__(self):
        return self.text


@dataclass(frozen=True)
class Installation:
    """The installed driver package the pipeline is going to patch."""
    kernel: KernelVersion
    driver: DriverVersion
    package: Path

    @property
    def package_dir(self) -> Path:
        return self.package.parent

    @property
    def checksum_file(self) -> Path:
        return self.package.with_name(self.package.name + ".md5")


def running_kernel_release() -> str:
    """Release string of the running kernel, as ``uname -r`` prints it."""
    return platform.release()


def find_package(package_dir: Path) -> Path:
    """Locate the nvidia driver package in *package_dir*."""
    candidates = sorted(p for p in package_dir.glob(PACKAGE_GLOB)
                        if p.is_file() and not p.name.endswith(STAGING_SUFFIX))
    if not candidates:
        raise PackageNotFound(f"No {PACKAGE_GLOB} package found in: {package_dir}")
    if len(candidates) > 1:
        others = ", ".join(p.name for p in candidates[1:])
        _console.warn(f"Several driver packages found, using {candidates[0].name} (ignoring {others})")
    return candidates[0]


def resolve_installation(config) -> Installation:
    """Resolve kernel, package and driver version for this run."""
    kernel = KernelVersion.parse(config.kernel_version or running_kernel_release())
    _console.info(f"Kernel version : {kernel}")

    package_dir = Path(config.plugin_dir) / kernel.short
    if not package_dir.is_dir():
        raise PackageNotFound(f"Package directory not found: {package_dir}")

    package = find_package(package_dir)
    if config.driver_version:
        driver = DriverVersion.parse(config.driver_version)
    else:
        driver = DriverVersion.from_package_name(package.name)

    _console.info(f"Driver version : {driver}")
    _console.info(f"Package file   : {package}")
    return Installation(kernel=kernel, driver=driver, package=package)

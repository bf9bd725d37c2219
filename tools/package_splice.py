"""Swap freshly built modules into the installed driver package.

Extracts the Slackware package, overwrites the stock .ko files with the
P2P builds, repackages, replaces the original in place, and rewrites the
companion .md5 so the plugin accepts the package.
"""

from __future__ import annotations

import hashlib
import os
import shutil
import tarfile
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import _console
import _env
from archive_extract import extract_archive, list_members
from patch_errors import PackagingFailed, StructuralMismatch

# Kernel modules are at lib/modules/<kernel>/kernel/drivers/video/*.ko
MODULE_SUBDIR = "lib/modules/{kernel}/kernel/drivers/video"


class MakepkgPackager:
    """Slackware makepkg; keeps package metadata intact."""
    name = "makepkg"

    def pack(self, root, dest):
        result = _env.run(["makepkg", "-l", "n", "-c", "n", str(dest)], cwd=root)
        if result.returncode != 0:
            raise PackagingFailed(f"makepkg exited with code {result.returncode}")


class TarXzPackager:
    """Plain tar.xz of the package root, for hosts without makepkg."""
    name = "tar.xz"

    def pack(self, root, dest):
        try:
            with tarfile.open(dest, "w:xz") as tf:
                tf.add(root, arcname=".")
        except (OSError, tarfile.TarError) as e:
            raise PackagingFailed(f"cannot write {dest}: {e}") from e


def select_packager(which=shutil.which):
    if which("makepkg"):
        return MakepkgPackager()
    _console.warn("makepkg not found - the package will be rebuilt as a plain tar.xz archive.")
    return TarXzPackager()


@dataclass
class SpliceResult:
    package: Path
    checksum: str
    replaced: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)


def md5_file(path):
    """Compute MD5 of a single file."""
    h = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def write_checksum(package: Path) -> str:
    digest = md5_file(package)
    package.with_name(package.name + ".md5").write_text(digest + "\n")
    return digest


def staging_path(package: Path) -> Path:
    return package.with_name(package.name[:-len(".txz")] + ".patched.txz")


def module_subdir(kernel) -> str:
    return MODULE_SUBDIR.format(kernel=kernel)


def replace_modules(module_dir: Path, built: dict[str, Path]):
    """Overwrite every .ko in *module_dir* that has a built counterpart.

    Returns (replaced, kept) lists of module filenames.
    """
    replaced, kept = [], []
    for existing in sorted(module_dir.rglob("*.ko")):
        if existing.name in built:
            _console.info(f"  Replacing: {existing.name}")
            shutil.copyfile(built[existing.name], existing)
            replaced.append(existing.name)
        else:
            _console.warn(f"  No built replacement for: {existing.name} (keeping original)")
            kept.append(existing.name)
    return replaced, kept


def plan_splice(installation) -> list[str]:
    """Names of the modules a real run would consider, read-only."""
    subdir = module_subdir(installation.kernel)
    members = list_members(installation.package)
    if not any(m == subdir or m.startswith(subdir + "/") for m in members):
        raise StructuralMismatch(f"Expected module dir not found in package: {subdir}")
    modules = sorted(os.path.basename(m) for m in members
                     if m.startswith(subdir + "/") and m.endswith(".ko"))
    _console.dry_run(f"Would extract {installation.package} and replace .ko files in {subdir}/:")
    for name in modules:
        _console.dry_run(f"  {name}")
    _console.dry_run(f"Would repackage to: {installation.package}")
    _console.dry_run(f"Would update md5  : {installation.checksum_file}")
    return modules


def splice_package(installation, built, packager) -> SpliceResult:
    """Replace the stock modules in the installed package with *built*."""
    package = installation.package
    staging = staging_path(package)

    with tempfile.TemporaryDirectory(prefix="nvidia-pkg-") as scratch:
        _console.info(f"Extracting package to: {scratch}")
        extract_archive(package, scratch)

        module_dir = Path(scratch) / module_subdir(installation.kernel)
        if not module_dir.is_dir():
            raise StructuralMismatch(
                f"Expected module dir not found in package: {module_subdir(installation.kernel)}")
        _console.info(f"Module install dir: {module_dir}")

        replaced, kept = replace_modules(module_dir, built)
        _console.ok(f"Replaced {len(replaced)} kernel module(s).")

        _console.info(f"Repackaging with {packager.name} -> {staging.name}")
        try:
            packager.pack(scratch, staging)
        except BaseException:
            staging.unlink(missing_ok=True)
            raise

    os.replace(staging, package)
    checksum = write_checksum(package)
    _console.ok(f"Package updated: {package}")
    _console.ok(f"MD5 updated    : {installation.checksum_file}")
    return SpliceResult(package=package, checksum=checksum, replaced=replaced, kept=kept)

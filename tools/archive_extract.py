"""Tar archive extraction and listing.

Handles the two archive kinds the pipeline meets: GitHub source tarballs
(.tar.gz, one top-level wrapper directory to strip) and Slackware driver
packages (.txz).  Format is detected from the filename.
"""

import os
import tarfile

from patch_errors import PatchDriverError

# Map of format string -> tarfile read mode
_FORMATS = {
    "tar.gz":  "r:gz",
    "tgz":     "r:gz",
    "tar.xz":  "r:xz",
    "txz":     "r:xz",
    "tar.bz2": "r:bz2",
    "tbz2":    "r:bz2",
    "tar":     "r:",
}


class ArchiveError(PatchDriverError):
    """An archive is unreadable or tries to escape its output directory."""


def detect_format(path):
    """Detect archive format from filename."""
    name = os.path.basename(str(path)).lower()
    # Check multi-part extensions first (longest match)
    for fmt in ("tar.gz", "tar.xz", "tar.bz2"):
        if name.endswith("." + fmt):
            return fmt
    for fmt in ("tgz", "txz", "tbz2", "tar"):
        if name.endswith("." + fmt):
            return fmt
    return None


def _open(archive):
    fmt = detect_format(archive)
    if fmt is None:
        raise ArchiveError(f"cannot detect archive format of {archive}")
    try:
        return tarfile.open(archive, _FORMATS[fmt])
    except (tarfile.TarError, OSError) as e:
        raise ArchiveError(f"cannot open {archive}: {e}") from e


def _strip(name, strip_components):
    parts = name.split("/", strip_components)
    if len(parts) <= strip_components:
        return ""
    return parts[-1]


def extract_archive(archive, output, strip_components=0):
    """Extract *archive* into *output*, dropping leading path components."""
    output = os.path.abspath(output)
    os.makedirs(output, exist_ok=True)
    with _open(archive) as tf:
        for member in tf.getmembers():
            if strip_components > 0:
                member.name = _strip(member.name, strip_components)
                if not member.name:
                    continue
                # Strip the same prefix from hardlink targets so tarfile
                # can resolve them after renaming.
                if member.islnk() and member.linkname:
                    link = _strip(member.linkname, strip_components)
                    if link:
                        member.linkname = link
            member.name = os.path.normpath(member.name)
            if member.name == ".":
                continue
            # Security: prevent path traversal
            dest = os.path.abspath(os.path.join(output, member.name))
            if dest != output and not dest.startswith(output + os.sep):
                raise ArchiveError(f"path traversal detected in {archive}: {member.name}")
            tf.extract(member, output, filter="tar")


def list_members(archive):
    """Normalized member names of *archive*, without extracting."""
    with _open(archive) as tf:
        return [os.path.normpath(name) for name in tf.getnames()]

"""Prepare the unraid_kernel build container image.

The image is built from ich777/unraid_kernel when it is not cached
locally.  That source needs a few fixes before it builds and before it can
run a one-shot command:

  - Dockerfile / installscript.sh pick packages with grep; "testing" and
    "pasture" variants make those greps match several files
  - the manual jq install points at a dead mirror; install jq and its
    oniguruma dependency from the stock package list instead
  - the start scripts keep the container alive forever; make them run the
    forwarded command and exit
"""

from __future__ import annotations

import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import _console
import _env
from patch_errors import ContainerImageError


def _sub_each_line(pattern, repl):
    """First match on every line, like sed 's/pattern/repl/'."""
    regex = re.compile(pattern)

    def apply(text):
        return "".join(regex.sub(repl, line, count=1)
                       for line in text.splitlines(keepends=True))
    return apply


def _sub_last_line(pattern, repl):
    """Substitute on the final line only, like sed '$s/pattern/repl/'."""
    regex = re.compile(pattern)

    def apply(text):
        lines = text.splitlines(keepends=True)
        if lines:
            lines[-1] = regex.sub(repl, lines[-1], count=1)
        return "".join(lines)
    return apply


def _delete_lines(pattern):
    regex = re.compile(pattern)

    def apply(text):
        return "".join(line for line in text.splitlines(keepends=True)
                       if not regex.search(line))
    return apply


def _delete_ranges(start, end):
    """Drop every block from a *start* line through the next *end* line.

    Like sed '/start/,/end/d', *end* is only looked for after the line
    that opened the block.
    """
    start_re, end_re = re.compile(start), re.compile(end)

    def apply(text):
        out, inside = [], False
        for line in text.splitlines(keepends=True):
            if inside:
                if end_re.search(line):
                    inside = False
                continue
            if start_re.search(line):
                inside = True
                continue
            out.append(line)
        return "".join(out)
    return apply


def _append_line(line):
    def apply(text):
        if text and not text.endswith("\n"):
            text += "\n"
        return text + line + "\n"
    return apply


@dataclass(frozen=True)
class SourcePatch:
    path: str
    description: str
    transform: Callable[[str], str]


IMAGE_PATCHES = (
    SourcePatch("Dockerfile", "exclude testing packages",
                _sub_each_line(r"grep '\\\.txz\$'", r"grep '\\.txz$' | grep -v 'testing'")),
    SourcePatch("installscript.sh", "exclude pasture packages",
                _sub_each_line(r'grep -v "/patches/"', r'grep -v "/patches/" | grep -v "/pasture/"')),
    SourcePatch("installscript.sh", "install stock jq and oniguruma",
                _sub_each_line(r"nghttp3", r"nghttp3\n  jq\n  oniguruma")),
    SourcePatch("installscript.sh", "drop the broken manual jq install",
                _delete_ranges(r"# install jq", r"installpkg .*jq-")),
    SourcePatch("docker-scripts/start-container.sh", "return instead of sleeping forever",
                _sub_last_line(r"sleep infinity", "exit 0")),
    SourcePatch("docker-scripts/start.sh", "run start-container.sh in the foreground",
                _sub_each_line(r"/opt/scripts/start-container\.sh &", "/opt/scripts/start-container.sh")),
    SourcePatch("docker-scripts/start.sh", "drop killpid handling",
                _delete_lines(r"killpid")),
    SourcePatch("docker-scripts/start.sh", "drop the keep-alive loop",
                _delete_ranges(r"while true", r"done")),
    SourcePatch("docker-scripts/start.sh", "exec the forwarded command",
                _append_line('exec "$@"')),
)


def apply_image_patches(source_dir: Path, patches=IMAGE_PATCHES):
    """Apply *patches* in order to the checked-out image source."""
    for patch in patches:
        target = Path(source_dir) / patch.path
        if not target.is_file():
            raise ContainerImageError(f"cannot patch {patch.path}: file not found in image source")
        _console.info(f"Patching {patch.path}: {patch.description}")
        before = target.read_text()
        after = patch.transform(before)
        if after == before:
            _console.warn(f"  {patch.path}: '{patch.description}' changed nothing; "
                          "the image source may have moved on")
        target.write_text(after)


def image_exists(settings) -> bool:
    result = subprocess.run(
        [settings.runtime, "image", "inspect", settings.image],
        stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
    )
    return result.returncode == 0


def ensure_image(settings):
    """Make sure the build image is available, building it if needed."""
    if image_exists(settings):
        return

    _console.info(f"Container image '{settings.image}' not found locally.")
    _console.info(f"Building from source ({settings.image_source})...")
    if shutil.which("git") is None:
        raise ContainerImageError("git is required to clone the image source but is not installed.")

    with tempfile.TemporaryDirectory(prefix="unraid_kernel-") as build_dir:
        result = _env.run(["git", "clone", "--depth", "1", settings.image_source, build_dir])
        if result.returncode != 0:
            raise ContainerImageError(f"Failed to clone {settings.image_source}.")

        apply_image_patches(Path(build_dir))

        result = _env.run([settings.runtime, "build", "-t", settings.image, build_dir])
        if result.returncode != 0:
            raise ContainerImageError(f"Failed to build container image '{settings.image}'.")

    _console.ok(f"Container image '{settings.image}' built successfully.")

"""Compile the open GPU kernel modules and collect the .ko outputs."""

from __future__ import annotations

import multiprocessing
from pathlib import Path

import _console
from patch_errors import BuildFailed, BuildProducedNothing

# Built modules end up in kernel-open/<subdir>/*.ko
OUTPUT_SUBDIR = "kernel-open"


def make_command(kernel, jobs=None):
    jobs = jobs or multiprocessing.cpu_count()
    return ["make", "modules", f"-j{jobs}", f"KERNEL_UNAME={kernel}"]


def collect_modules(source_dir: Path) -> dict[str, Path]:
    """Map module filename -> absolute path for every built .ko."""
    out_dir = Path(source_dir) / OUTPUT_SUBDIR
    built = {}
    for ko in sorted(out_dir.rglob("*.ko")):
        if ko.is_file():
            built[ko.name] = ko.resolve()
    return built


def build_modules(environment, source, kernel, config) -> dict[str, Path]:
    """Run the module build in *environment*; return the BuiltModuleSet.

    Returns an empty dict in dry-run mode, where nothing is built.
    """
    cmd = make_command(kernel)
    log_path = config.build_log
    if config.dry_run:
        _console.dry_run(f"Would run: {environment.describe(cmd, source.path)}")
        _console.dry_run(f"Would collect .ko files from {Path(source.path) / OUTPUT_SUBDIR}/")
        return {}

    _console.info(f"Building kernel modules (log: {log_path})...")
    status = environment.run(cmd, source.path, log_path)
    if status != 0:
        raise BuildFailed(
            f"Module build failed with exit code {status}. Check {log_path}",
            exit_code=status)
    _console.ok("Build complete.")

    built = collect_modules(source.path)
    if not built:
        raise BuildProducedNothing(f"No .ko files found after build. Check {log_path}")
    _console.info("Built modules:")
    for path in built.values():
        _console.info(f"  {path}")
    return built


def use_prebuilt(source, config) -> dict[str, Path]:
    """Take .ko files already built in *source* instead of running make."""
    out_dir = Path(source.path) / OUTPUT_SUBDIR
    if config.dry_run:
        _console.dry_run(f"Would use modules already built in {out_dir}/")
        return {}

    built = collect_modules(source.path)
    if not built:
        raise BuildProducedNothing(f"--prebuilt given but no .ko files found in {out_dir}/")
    _console.info("Using prebuilt modules:")
    for path in built.values():
        _console.info(f"  {path}")
    return built

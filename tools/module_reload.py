"""Reload the live nvidia modules from the patched package.

Unload order matters: nvidia_drm -> nvidia_modeset -> nvidia_uvm -> nvidia.
"""

from pathlib import Path

import _console
import _env
from patch_errors import ReloadFailed

UNLOAD_ORDER = ("nvidia_drm", "nvidia_modeset", "nvidia_uvm", "nvidia")
PRIMARY_MODULE = "nvidia"


def loaded_modules(proc_modules="/proc/modules"):
    """Names of the currently loaded kernel modules."""
    try:
        text = Path(proc_modules).read_text()
    except OSError:
        return set()
    return {line.split()[0] for line in text.splitlines() if line.strip()}


def _step(cmd, runner):
    try:
        result = runner(cmd)
    except OSError as e:
        raise ReloadFailed(f"{cmd[0]}: {e}") from e
    if result.returncode != 0:
        detail = (result.stderr or "").strip()
        raise ReloadFailed(f"{' '.join(cmd)} failed with exit code {result.returncode}"
                           + (f": {detail}" if detail else ""))


def reload_modules(package, dry_run=False, runner=None, loaded=None):
    """Unload the live driver, install *package*, and load it again."""
    if dry_run:
        _console.dry_run("Would reload: rmmod " + " ".join(UNLOAD_ORDER)
                         + f" + installpkg {package} + depmod --all + modprobe {PRIMARY_MODULE}")
        return

    runner = runner or (lambda cmd: _env.run(cmd, capture=True))
    live = loaded_modules() if loaded is None else loaded

    _console.info("Reloading kernel modules...")
    for module in UNLOAD_ORDER:
        if module not in live:
            _console.info(f"  {module} not loaded, skipping")
            continue
        _step(["rmmod", module], runner)

    _step(["installpkg", str(package)], runner)
    _step(["depmod", "--all"], runner)
    _step(["modprobe", PRIMARY_MODULE], runner)
    _console.ok("Modules reloaded.")

"""Run configuration for the driver patch pipeline.

All options are gathered once into a frozen PatchConfig and handed to each
stage.  Defaults can be overridden from an optional YAML settings file:

    plugin_dir: /boot/config/plugins/nvidia-driver/packages
    work_dir: /mnt/user/appdata/p2p-patch
    upstream:
      patched_repo: aikitoria/open-gpu-kernel-modules
      timeout: 30
    container:
      runtime: podman

Command-line flags win over the file.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path

import yaml

import _console
from patch_errors import SettingsError

DEFAULT_PLUGIN_DIR = Path("/boot/config/plugins/nvidia-driver/packages")


@dataclass(frozen=True)
class UpstreamSettings:
    """Where P2P patches and stock sources are published."""
    patched_repo: str = "aikitoria/open-gpu-kernel-modules"
    upstream_repo: str = "NVIDIA/open-gpu-kernel-modules"
    api_url: str = "https://api.github.com"
    archive_url: str = "https://github.com"
    timeout: float = 15.0
    # GitHub caps per_page at 100.
    per_page: int = 100


@dataclass(frozen=True)
class ContainerSettings:
    """Build container used when the host has no compiler."""
    runtime: str = "docker"
    image: str = "ich777/unraid_kernel"
    image_source: str = "https://github.com/ich777/unraid_kernel.git"
    boot_path: str = "/boot"


@dataclass(frozen=True)
class PatchConfig:
    kernel_version: str | None = None
    driver_version: str | None = None
    src_dir: Path | None = None
    plugin_dir: Path = DEFAULT_PLUGIN_DIR
    work_dir: Path = field(default_factory=Path.cwd)
    check_only: bool = False
    dry_run: bool = False
    reload: bool = False
    in_container: bool = False
    prebuilt: bool = False
    upstream: UpstreamSettings = field(default_factory=UpstreamSettings)
    container: ContainerSettings = field(default_factory=ContainerSettings)

    @property
    def build_log(self) -> Path:
        return self.work_dir / "patch-build.log"

    def cli_args(self) -> list[str]:
        """Rebuild the command-line arguments this config came from."""
        args = []
        if self.kernel_version:
            args += ["--kernel-version", self.kernel_version]
        if self.driver_version:
            args += ["--driver-version", self.driver_version]
        if self.src_dir:
            args += ["--src-dir", str(self.src_dir)]
        if self.plugin_dir != DEFAULT_PLUGIN_DIR:
            args += ["--plugin-dir", str(self.plugin_dir)]
        if self.dry_run:
            args.append("--dry-run")
        if self.reload:
            args.append("--reload")
        if self.prebuilt:
            args.append("--prebuilt")
        return args


def _section(cls, data, name):
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise SettingsError(f"settings section '{name}' must be a mapping")
    known = {f.name for f in dataclasses.fields(cls)}
    for key in sorted(set(data) - known):
        _console.warn(f"Ignoring unknown setting: {name}.{key}")
    return cls(**{k: v for k, v in data.items() if k in known})


def load_settings(path: Path | None) -> dict:
    """Read a YAML settings file into PatchConfig keyword arguments.

    Returns an empty dict when no file is given.  Paths are converted to
    Path objects and the upstream/container sections to their dataclasses.
    """
    if path is None:
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise SettingsError(f"cannot read settings file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise SettingsError(f"invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SettingsError(f"settings file {path} must contain a mapping")

    result = {}
    for key, value in data.items():
        if key in ("plugin_dir", "work_dir"):
            result[key] = Path(value).expanduser()
        elif key == "upstream":
            result[key] = _section(UpstreamSettings, value, key)
        elif key == "container":
            result[key] = _section(ContainerSettings, value, key)
        else:
            _console.warn(f"Ignoring unknown setting: {key}")
    return result


def build_config(settings_file: Path | None = None, **options) -> PatchConfig:
    """Merge settings-file values with command-line options.

    Options that are None are treated as "not given" so the file value
    (or the dataclass default) applies.
    """
    merged = load_settings(settings_file)
    merged.update({k: v for k, v in options.items() if v is not None})
    return PatchConfig(**merged)

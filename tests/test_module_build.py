"""Tests for the module build step, run against a fake make."""
from __future__ import annotations

import pytest

from build_env import NativeEnvironment
from conftest import KERNEL, make_source_tree
from driver_version import KernelVersion
from module_build import build_modules, collect_modules, make_command, use_prebuilt
from patch_errors import BuildFailed, BuildProducedNothing
from source_fetch import SourceTree

MAKE_OK = """\
echo "make $@"
echo "CC kernel-open/nvidia/nv.o" >&2
mkdir -p kernel-open/nvidia kernel-open/nvidia-uvm
printf 'p2p nvidia' > kernel-open/nvidia/nvidia.ko
printf 'p2p nvidia-uvm' > kernel-open/nvidia-uvm/nvidia-uvm.ko
"""


@pytest.fixture
def source(work_dir):
    path = make_source_tree(work_dir / "open-gpu-kernel-modules")
    return SourceTree(path, "590.48.01", "cache")


def test_make_command():
    assert make_command(KERNEL, jobs=8) == [
        "make", "modules", "-j8", f"KERNEL_UNAME={KERNEL}"]
    assert make_command(KERNEL)[2].startswith("-j")


def test_build_collects_modules_and_logs(make_config, fake_bin, source):
    fake_bin("make", MAKE_OK)
    config = make_config()
    built = build_modules(NativeEnvironment(config), source, KernelVersion.parse(KERNEL), config)

    assert sorted(built) == ["nvidia-uvm.ko", "nvidia.ko"]
    assert built["nvidia.ko"].read_bytes() == b"p2p nvidia"
    assert built["nvidia.ko"].is_absolute()
    log = config.build_log.read_text()
    assert "make modules" in log
    assert f"KERNEL_UNAME={KERNEL}" in log
    # stderr lands in the same log
    assert "CC kernel-open/nvidia/nv.o" in log


def test_build_env_pins_locale(make_config, fake_bin, source):
    fake_bin("make", 'echo "locale=$LC_ALL ccache=$CCACHE_DISABLE"; exit 0')
    config = make_config()
    with pytest.raises(BuildProducedNothing):
        build_modules(NativeEnvironment(config), source, KernelVersion.parse(KERNEL), config)
    assert "locale=C ccache=1" in config.build_log.read_text()


def test_build_failure_keeps_exit_code_and_log(make_config, fake_bin, source):
    fake_bin("make", 'echo "error: implicit declaration"\nexit 2')
    config = make_config()
    with pytest.raises(BuildFailed) as exc:
        build_modules(NativeEnvironment(config), source, KernelVersion.parse(KERNEL), config)
    assert exc.value.exit_code == 2
    assert str(config.build_log) in exc.value.format_message()
    assert "implicit declaration" in config.build_log.read_text()


def test_build_without_modules_is_fatal(make_config, fake_bin, source):
    fake_bin("make", "exit 0")
    config = make_config()
    with pytest.raises(BuildProducedNothing, match="No .ko files"):
        build_modules(NativeEnvironment(config), source, KernelVersion.parse(KERNEL), config)


def test_dry_run_builds_nothing(make_config, fake_bin, source, tmp_path, capsys):
    marker = tmp_path / "make-ran"
    fake_bin("make", f"touch {marker}")
    config = make_config(dry_run=True)
    built = build_modules(NativeEnvironment(config), source, KernelVersion.parse(KERNEL), config)
    assert built == {}
    assert not marker.exists()
    assert not config.build_log.exists()
    assert "[DRY-RUN] Would run: make modules" in capsys.readouterr().out


def test_collect_modules_ignores_other_dirs(tmp_path):
    (tmp_path / "kernel-open" / "nvidia").mkdir(parents=True)
    (tmp_path / "kernel-open" / "nvidia" / "nvidia.ko").write_bytes(b"ko")
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "stray.ko").write_bytes(b"ko")
    assert list(collect_modules(tmp_path)) == ["nvidia.ko"]


def test_prebuilt_modules_are_collected(make_config, source):
    ko = source.path / "kernel-open" / "nvidia" / "nvidia.ko"
    ko.parent.mkdir(parents=True)
    ko.write_bytes(b"built by hand")
    built = use_prebuilt(source, make_config())
    assert built == {"nvidia.ko": ko.resolve()}


def test_prebuilt_dry_run(make_config, source, capsys):
    assert use_prebuilt(source, make_config(dry_run=True)) == {}
    assert "Would use modules already built" in capsys.readouterr().out

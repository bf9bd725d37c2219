"""Where the kernel modules get compiled.

Unraid ships without a compiler.  When make/gcc are on the host the build
runs natively; otherwise the build command runs inside the unraid_kernel
container with the source tree bind-mounted, and only its exit status and
output come back.  Both environments expose the same run() so the module
builder does not care which one it got.
"""

from __future__ import annotations

import dataclasses
import shlex
import shutil
import sys
from pathlib import Path

import _console
import _env
import container_image
import module_build
from patch_errors import BrokenBuildContainer, MissingToolchain

BUILD_TOOLS = ("make", "gcc", "cc")
CONTAINER_ROOT = "/build"


class NativeEnvironment:
    name = "native"

    def __init__(self, config):
        self.config = config

    def prepare(self):
        _console.info("Build tools found, building natively.")

    def describe(self, cmd, cwd):
        return f"{shlex.join(cmd)}  (in {cwd})"

    def run(self, cmd, cwd, log_path):
        return _env.tee_run(cmd, log_path, cwd=cwd, env=_env.build_env())


class ContainerEnvironment:
    name = "container"

    def __init__(self, config):
        self.config = config
        self.settings = config.container

    def prepare(self):
        image = self.settings.image
        if self.config.dry_run:
            _console.dry_run(f"Would ensure container image '{image}' "
                             f"(building it from {self.settings.image_source} if missing)")
            return
        container_image.ensure_image(self.settings)
        _console.info(f"Building inside {image} container...")

    def container_command(self, cmd, cwd, tty=None):
        """Wrap *cmd* in a one-shot container run with *cwd* mounted.

        *tty* defaults to whether stdin is a terminal.
        """
        src = Path(cwd).resolve()
        mount = f"{CONTAINER_ROOT}/{src.name}"
        boot = self.settings.boot_path
        run = [self.settings.runtime, "run", "--rm", "--init"]
        if tty is None:
            tty = sys.stdin.isatty()
        if tty:
            run.append("-it")
        run += [
            "-v", f"{src}:{mount}",
            "-v", f"{boot}:{boot}",
            "-w", mount,
            self.settings.image,
        ]
        return run + list(cmd)

    def describe(self, cmd, cwd):
        return shlex.join(self.container_command(cmd, cwd))

    def run(self, cmd, cwd, log_path):
        # The container's exit status is relayed unchanged.
        return _env.tee_run(self.container_command(cmd, cwd), log_path)


def manual_build_commands(config, source_dir, kernel) -> list[str]:
    """Commands an operator can run by hand to build, then finish here.

    The first runs only the module build in the container with the source
    tree mounted; the second splices the result without compiling.
    """
    build = ContainerEnvironment(config).container_command(
        module_build.make_command(kernel), source_dir, tty=True)
    finish = dataclasses.replace(config, src_dir=Path(source_dir).resolve(), prebuilt=True)
    return [shlex.join(build), shlex.join(["patch-driver", *finish.cli_args()])]


def select_environment(config, source_dir, kernel, which=shutil.which):
    """Pick the native or container build environment for this host."""
    missing = _env.missing_tools(BUILD_TOOLS, which=which)
    if not missing:
        return NativeEnvironment(config)

    if config.in_container:
        raise BrokenBuildContainer(
            f"Build tools still missing inside the build container ({' '.join(missing)}). "
            "The container image may be outdated.")

    _console.warn(f"Build tools not found: {' '.join(missing)}")
    runtime = config.container.runtime
    if which(runtime) is None:
        build, finish = manual_build_commands(config, source_dir, kernel)
        raise MissingToolchain(
            f"{runtime} is also not available.\n"
            f"  Install {runtime} (Unraid: Settings -> Docker), then re-run.\n"
            f"  Or, where {runtime} is available and this source tree is visible, build by hand:\n"
            f"    {build}\n"
            "  and then splice the built modules here:\n"
            f"    {finish}")

    _console.info(f"Delegating the module build to the '{config.container.image}' container.")
    return ContainerEnvironment(config)

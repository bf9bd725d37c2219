#!/usr/bin/env python3
"""
Patch the Unraid nvidia-driver plugin package with P2P-enabled kernel modules.

This script:
1. Detects the running kernel and the installed nvidia-driver package
2. Optionally checks which driver versions have a P2P branch upstream
3. Obtains matching open-gpu-kernel-modules source (cached or downloaded)
4. Builds the modules natively, or in the unraid_kernel container when the
   host has no compiler
5. Swaps the built .ko files into the package and rewrites its .md5
6. Optionally reloads the live kernel modules

Usage:
    patch-driver --check
    patch-driver --dry-run
    patch-driver --reload
    patch-driver --src-dir /mnt/user/src/open-gpu-kernel-modules --prebuilt
    patch-driver --driver-version 590.48.01 --src-dir /mnt/user/src/open-gpu-kernel-modules
"""

from __future__ import annotations

from pathlib import Path

import click

import _console
import build_env
import module_build
import module_reload
import package_splice
import source_fetch
from driver_version import resolve_installation
from patch_errors import ReloadFailed
from patch_settings import PatchConfig, build_config
from upstream_client import GitHubClient, check_compatibility


def print_compatibility(report, settings):
    """Print the P2P compatibility table for --check."""
    repo = settings.patched_repo
    click.echo()
    click.secho(f"  P2P-patched driver versions ({repo})", fg="cyan", bold=True)
    click.echo()
    for version in report.available:
        if version == report.installed:
            click.secho(f"  *  {version}  <- your installed driver (COMPATIBLE)", fg="green")
        else:
            click.echo(f"     {version}")
    click.echo()
    click.echo(f"  Installed driver : {click.style(report.installed, fg='yellow')}")
    if report.compatible:
        click.echo(f"  P2P status       : {click.style('COMPATIBLE', fg='green')}")
        click.echo("  Run without --check to apply the patch.")
    else:
        click.echo(f"  P2P status       : {click.style('NOT COMPATIBLE', fg='red')}")
        click.echo()
        click.echo(f"  Your driver ({report.installed}) has no P2P branch in {repo}.")
        click.echo(f"  Newest patched version: {click.style(report.latest, fg='green')}")
        click.echo()
        click.echo("  Options:")
        click.echo(f"  1) Change your Unraid driver to {report.latest}")
        click.echo("     Plugins -> nvidia-driver -> choose version in the Unraid WebUI")
        click.echo("  2) Re-run this script after switching.")
        click.echo()
        click.echo(f"  Branch list: https://github.com/{repo}/branches")
    click.echo()


def run_check(config: PatchConfig):
    installation = resolve_installation(config)
    with GitHubClient(config.upstream) as client:
        report = check_compatibility(client, installation.driver)
    print_compatibility(report, config.upstream)
    return report


def run_patch(config: PatchConfig):
    """Resolve, fetch, build, splice and optionally reload."""
    installation = resolve_installation(config)

    with GitHubClient(config.upstream) as client:
        source = source_fetch.acquire_source(config, installation.driver, client)

    if config.prebuilt:
        built = module_build.use_prebuilt(source, config)
    else:
        environment = build_env.select_environment(config, source.path, installation.kernel)
        environment.prepare()
        built = module_build.build_modules(environment, source, installation.kernel, config)

    if config.dry_run:
        package_splice.plan_splice(installation)
    else:
        packager = package_splice.select_packager()
        package_splice.splice_package(installation, built, packager)

    reloaded = False
    if config.reload:
        try:
            module_reload.reload_modules(installation.package, dry_run=config.dry_run)
            reloaded = not config.dry_run
        except ReloadFailed as e:
            _console.error(f"Module reload failed: {e.format_message()}")
            _console.warn("The package is already patched; a reboot will activate it.")

    click.echo()
    _console.banner([
        "Dry run complete - nothing was changed." if config.dry_run else "Patching complete!",
        f"Driver: {installation.driver}  |  Kernel: {installation.kernel}",
        f"Package: {installation.package}",
    ])
    if not reloaded and not config.dry_run:
        _console.warn("Reboot or use --reload to activate the patched modules.")
    if not source.has_p2p:
        _console.warn("Built from NVIDIA upstream sources: P2P support is NOT included.")


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--kernel-version", help="Override kernel version (default: uname -r)")
@click.option("--driver-version", help="Override driver version (e.g. 590.48.01)")
@click.option("--src-dir", type=click.Path(path_type=Path),
              help="Path to open-gpu-kernel-modules source (default: cached or downloaded)")
@click.option("--plugin-dir", type=click.Path(path_type=Path),
              help="Plugin packages dir (default: /boot/config/plugins/nvidia-driver/packages)")
@click.option("--work-dir", type=click.Path(file_okay=False, path_type=Path),
              help="Directory for sources and the build log (default: current directory)")
@click.option("--config", "settings_file", envvar="P2P_PATCH_CONFIG",
              type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="YAML settings file")
@click.option("--check", "check_only", is_flag=True,
              help="List driver versions with a P2P patch and check the installed one. Changes nothing.")
@click.option("--dry-run", is_flag=True, help="Print what would be done, don't change anything")
@click.option("--reload", is_flag=True, help="After patching, reload the live kernel modules")
@click.option("--prebuilt", is_flag=True,
              help="Skip the build and splice the .ko files already built in the source tree")
@click.option("--in-container", is_flag=True, hidden=True,
              help="Internal: already running inside the build container")
def main(kernel_version, driver_version, src_dir, plugin_dir, work_dir, settings_file,
         check_only, dry_run, reload, prebuilt, in_container):
    """Patch the Unraid nvidia-driver package with P2P-enabled kernel modules
    from aikitoria/open-gpu-kernel-modules.

    Must run on the Unraid host so the installed package and kernel are
    visible; the compile step moves into a container when needed.
    """
    config = build_config(
        settings_file,
        kernel_version=kernel_version,
        driver_version=driver_version,
        src_dir=src_dir,
        plugin_dir=plugin_dir,
        work_dir=work_dir.resolve() if work_dir else None,
        check_only=check_only,
        dry_run=dry_run,
        reload=reload,
        prebuilt=prebuilt,
        in_container=in_container,
    )
    if config.check_only:
        run_check(config)
    else:
        run_patch(config)


if __name__ == "__main__":
    main()

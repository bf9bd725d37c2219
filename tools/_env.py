"""Shared subprocess helpers for the patch pipeline.

The module build inherits the host environment, but locale is pinned so
compiler diagnostics in the build log are stable, and compiler caches are
disabled so a stale ccache on the host cannot leak objects built for a
different kernel into the modules.
"""

import os
import shutil
import subprocess
import sys

import _console

# Vars pinned to fixed values for the module build.
_BUILD_PINS = {
    "LC_ALL": "C",
    "LANG": "C",
    "CCACHE_DISABLE": "1",
}


def build_env():
    """Return an env dict for the module build subprocess."""
    env = dict(os.environ)
    env.update(_BUILD_PINS)
    return env


def missing_tools(tools, which=shutil.which):
    """Return the subset of *tools* not found on PATH, in order."""
    return [tool for tool in tools if which(tool) is None]


def run(cmd, cwd=None, check=False, capture=False):
    """Echo and run a command, returning the CompletedProcess."""
    _console.command(cmd)
    return subprocess.run(
        [str(c) for c in cmd],
        cwd=cwd,
        check=check,
        capture_output=capture,
        text=True,
    )


def exit_status(returncode):
    """Map a Popen returncode to a shell-style exit status.

    A child killed by a signal reports -N; a shell would report 128+N.
    """
    if returncode < 0:
        return 128 - returncode
    return returncode


def tee_run(cmd, log_path, cwd=None, env=None):
    """Run *cmd*, streaming combined output to stdout and *log_path*.

    The log is written whether the command succeeds or not.  Returns the
    shell-style exit status.
    """
    _console.command(cmd)
    os.makedirs(os.path.dirname(os.path.abspath(log_path)), exist_ok=True)
    with open(log_path, "w") as log:
        proc = subprocess.Popen(
            [str(c) for c in cmd],
            cwd=cwd,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )
        try:
            for line in proc.stdout:
                sys.stdout.write(line)
                log.write(line)
        finally:
            proc.stdout.close()
            proc.wait()
    return exit_status(proc.returncode)

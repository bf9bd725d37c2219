"""Fatal conditions raised by the patch pipeline.

Every stage raises one of these instead of exiting; click prints the
message as ``Error: ...`` and exits with the exception's ``exit_code``.
"""

import click


class PatchDriverError(click.ClickException):
    """Base class for every fatal pipeline condition."""

    exit_code = 1


class SettingsError(PatchDriverError):
    """The settings file could not be read or has the wrong shape."""


class VersionParseError(PatchDriverError):
    """A kernel or driver version string could not be parsed."""


class PackageNotFound(PatchDriverError):
    """The plugin package directory or driver package is missing."""


class UpstreamUnavailable(PatchDriverError):
    """GitHub was unreachable, returned nothing, or rate-limited us."""


class NoPatchAvailable(PatchDriverError):
    """Neither a -p2p branch nor an upstream tag exists for the driver."""


class SourceNotFound(PatchDriverError):
    """An explicitly supplied source directory does not exist."""


class MissingToolchain(PatchDriverError):
    """No compiler, no make, and no container runtime to fall back on."""


class BrokenBuildContainer(PatchDriverError):
    """Build tools are missing inside the build container itself."""


class ContainerImageError(PatchDriverError):
    """The build container image could not be prepared."""


class BuildFailed(PatchDriverError):
    """The module build exited non-zero; the exit code is relayed."""

    def __init__(self, message, exit_code=1):
        super().__init__(message)
        self.exit_code = exit_code or 1


class BuildProducedNothing(PatchDriverError):
    """The build finished but left no .ko files behind."""


class StructuralMismatch(PatchDriverError):
    """The package has no module directory for the target kernel."""


class PackagingFailed(PatchDriverError):
    """The patched package could not be written."""


class ReloadFailed(PatchDriverError):
    """A live module reload step failed."""

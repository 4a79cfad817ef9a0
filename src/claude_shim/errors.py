from __future__ import annotations


class ShimError(RuntimeError):
    """Base class for fatal pipeline errors."""

    exit_code = 1


class RealBinaryNotFound(ShimError):
    """The underlying assistant binary is not on the filtered search path."""


class DispatcherNotFound(ShimError):
    exit_code = 127


class ShimConfigError(ShimError):
    """The installed layout is unusable (relative or self-referencing paths)."""


class ExecFailed(ShimError):
    """The next hop exists but the OS refused to run it (no shebang, EACCES, removed)."""

    exit_code = 126


class ServiceStartError(RuntimeError):
    """A background helper could not be brought up (soft failure)."""

"""
Error taxonomy for compute sessions.

Backend failures surface from PyOpenCL as ``pyopencl.Error`` subclasses
carrying a numeric status code. The session translates them into the
classes below so callers can tell a bad device selection from a kernel
that failed to compile or a dispatch that faulted on the device.

Lifecycle errors (double release, releasing a resource that is still in
use, touching a released handle, calling into a finished session) are
programming defects, not runtime conditions. They all derive from
``LifecycleError``.
"""

import pyopencl as cl


def constant_name(constants, value, default=None):
    """Symbolic name of ``value`` in a PyOpenCL constant class, or ``default``."""
    for name, member in vars(constants).items():
        if not name.startswith("_") and member == value:
            return name
    return default


def status_name(code, execution=False):
    """Return the symbolic OpenCL name for a status code, e.g. ``-5 -> 'OUT_OF_RESOURCES'``.

    With ``execution=True`` non-negative codes are event execution states
    (``0 -> 'COMPLETE'``) rather than API results (``0 -> 'SUCCESS'``).
    """
    if code is None:
        return "UNKNOWN"
    lookups = [cl.status_code, cl.command_execution_status]
    if execution and code >= 0:
        lookups.reverse()
    for constants in lookups:
        name = constant_name(constants, code)
        if name is not None:
            return name
    return f"STATUS_{code}"


def backend_status(exc):
    """Extract the status code from a ``pyopencl.Error``, or None."""
    code = getattr(exc, "code", None)
    if callable(code):
        code = code()
    return code


class ComputeError(Exception):
    """Base class of every error raised by a compute session."""


class DiscoveryError(ComputeError):
    """No platform or device matches the selection."""


class NoMatchingDeviceError(DiscoveryError):
    pass


class CompileError(ComputeError):
    """Kernel source failed to build. ``log`` holds the backend diagnostics."""

    def __init__(self, message, log="", options=""):
        self.log = log
        self.options = options
        full = message
        if log:
            full = f"{message}\n\nBuild log:\n{log}"
        super().__init__(full)


class EntryPointNotFoundError(ComputeError):
    def __init__(self, name, available=()):
        self.name = name
        self.available = tuple(available)
        msg = f"Kernel entry point '{name}' not found in program"
        if self.available:
            msg += f" (available: {', '.join(self.available)})"
        super().__init__(msg)


class ArgumentBindingError(ComputeError):
    """A kernel argument slot is unbound or bound to a mismatched value."""


class InvalidWorkSizeError(ComputeError):
    pass


class InvalidRegionError(ComputeError):
    """A transfer, map or sub-buffer region does not fit its memory object."""


class UnsupportedFeatureError(ComputeError):
    """The selected device lacks a capability the operation needs."""


class BackendStatusError(ComputeError):
    """Base for errors that carry an OpenCL status code."""

    def __init__(self, message, status=None):
        self.status = status
        if status is not None:
            message = f"{message} [{status_name(status)} ({status})]"
        super().__init__(message)


class ResourceExhaustedError(BackendStatusError):
    """The backend refused to create a context, queue or allocation."""


class KernelExecutionError(BackendStatusError):
    """A submitted operation completed with an error status."""


class LifecycleError(ComputeError):
    """Misuse of a resource handle or session; indicates a programming defect."""


class DoubleReleaseError(LifecycleError):
    pass


class ResourceStillInUseError(LifecycleError):
    pass


class ResourceReleasedError(LifecycleError):
    """A handle was used after it was released."""


class SessionStateError(LifecycleError):
    """The operation is not valid in the session's current state."""


class MapStateError(LifecycleError):
    """A memory object was mapped while already mapped."""

"""
Error taxonomy for the kernel session lifecycle.

Every failure raised by this package derives from SlideKernelError so that
callers (the DocumentManager busy gate, the notebook session, the CLI) can
catch one type and surface a readable message.
"""

from typing import Optional


class SlideKernelError(Exception):
    """Base class for all kernel lifecycle failures."""


class NoInterpreterFound(SlideKernelError):
    """No candidate interpreter exists on disk with the required packages."""


class MissingDependency(SlideKernelError):
    """The server process reported a missing Python module on stderr."""

    def __init__(self, message: str, line: str = ""):
        super().__init__(message)
        self.line = line


class StartupTimeout(SlideKernelError):
    """The server never answered the health endpoint within the poll budget."""


class ServerExited(SlideKernelError):
    """The server process went away before it became ready."""

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class ServerRequestError(SlideKernelError):
    """A REST call returned a non-success status."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class NoKernelsAvailable(ServerRequestError):
    """The server is reachable but reports no usable kernel specs."""


class SessionCreateFailed(ServerRequestError):
    pass


class SwitchKernelFailed(ServerRequestError):
    pass


class RestartFailed(ServerRequestError):
    pass


class ExecutionNoActiveSession(SlideKernelError):
    """
    Code was submitted while no kernel session is connected.

    Reported to the user through the notifier, not raised: the execution
    simply yields no outputs.
    """

    message = "Cannot execute cell: No active kernel session."


class KernelChannelClosed(SlideKernelError):
    """The kernel WebSocket closed while a request was still pending."""


class PackageInstallFailed(SlideKernelError):
    pass


class KernelRegistrationFailed(SlideKernelError):
    pass

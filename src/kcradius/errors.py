from __future__ import annotations


class InstallError(RuntimeError):
    """Base class for fatal installer failures. ``phase`` names the step that failed."""

    phase = "install"

    def __init__(self, message: str, *, phase: str | None = None) -> None:
        super().__init__(message)
        if phase is not None:
            self.phase = phase


class PrivilegeError(InstallError):
    phase = "preflight"


class MissingHostInstallation(InstallError):
    phase = "preflight"


class DependencyInstallError(InstallError):
    phase = "dependencies"


class FetchError(InstallError):
    phase = "fetch"

    def __init__(self, message: str, *, url: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class NoArtifactFound(InstallError):
    phase = "resolve"


class InvalidInput(InstallError):
    phase = "input"


class ServiceConvergenceError(InstallError):
    phase = "service"


class VerificationWarning(UserWarning):
    pass

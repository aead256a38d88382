"""Error taxonomy for the runner pool controller."""

from __future__ import annotations


class RunnerPoolError(Exception):
    """Base class for every error raised by this project."""


class ConfigurationError(RunnerPoolError):
    """Required configuration is missing or invalid."""

    def __init__(self, problems: list[str] | str) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class OrchestrationError(RunnerPoolError):
    """A container engine command failed."""

    def __init__(self, message: str, *, command: list[str] | None = None,
                 returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr


class UnknownCommandError(RunnerPoolError):
    """Bad CLI usage: unknown command, option or profile."""


class ScaleError(RunnerPoolError):
    """The pool could not be brought to the requested size."""


class RegistrationError(RunnerPoolError):
    """The hosting API refused or failed a registration call."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class AuthError(RegistrationError):
    """Credentials were rejected (HTTP 401/403)."""


class RateLimitError(RegistrationError):
    """The hosting API is throttling us (HTTP 429 or exhausted quota)."""

    def __init__(self, message: str, *, status: int | None = None,
                 retry_after: float | None = None) -> None:
        super().__init__(message, status=status)
        self.retry_after = retry_after

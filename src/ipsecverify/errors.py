"""Error taxonomy shared by the rollout and verification layers."""

from __future__ import annotations

from collections.abc import Sequence


class IpsecVerifyError(Exception):
    """Base class for every error raised by ipsecverify."""


class ConfigError(IpsecVerifyError):
    """Configuration is missing or malformed."""


class CommandError(IpsecVerifyError):
    """A cluster command exited non-zero or timed out."""

    def __init__(self, command: Sequence[str], returncode: int | None, stderr: str) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr.strip()
        status = "timed out" if returncode is None else f"exited {returncode}"
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(f"'{' '.join(self.command)}' {status}{detail}")


class NotFoundError(CommandError):
    """The requested cluster object does not exist."""


class AlreadyExistsError(CommandError):
    """The object being created already exists."""


class ConflictError(CommandError):
    """Optimistic-concurrency write lost against a newer resourceVersion."""


class TransientInfrastructureError(CommandError):
    """The API server dropped the connection — usually a control-plane restart."""


class ConvergenceTimeout(IpsecVerifyError):
    """A readiness predicate did not become true within its deadline."""

    def __init__(self, stage: str, timeout: float) -> None:
        self.stage = stage
        self.timeout = timeout
        super().__init__(f"{stage} did not converge within {timeout:g}s")


class TrialFailure(IpsecVerifyError):
    """Expected traffic was not observed, or unexpected traffic was."""

    def __init__(
        self,
        message: str,
        failed_sides: Sequence[str] = (),
        signature: str = "",
    ) -> None:
        self.failed_sides = tuple(failed_sides)
        self.signature = signature
        super().__init__(message)


class ExpiredPrerequisite(IpsecVerifyError):
    """An input the scenario depends on (e.g. a certificate) is no longer valid."""


class IllegalTransition(IpsecVerifyError):
    """The scenario state machine was asked for a transition it does not allow."""

    def __init__(self, current: object, requested: object) -> None:
        self.current = current
        self.requested = requested
        super().__init__(f"Illegal scenario transition: {current} -> {requested}")


class TeardownError(IpsecVerifyError):
    """One or more teardown steps failed after an otherwise successful scenario."""

    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors = list(errors)
        summary = "; ".join(str(e) for e in self.errors)
        super().__init__(f"Teardown failed: {summary}")

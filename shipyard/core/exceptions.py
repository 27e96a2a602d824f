"""
Error taxonomy

- Layered exception hierarchy rooted at ShipyardException
- Stable error codes for run records and CLI exit codes
- retryable: transient, may be retried locally by the owning component
- terminal: never retried, propagates straight to the orchestrator
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Stable error codes"""
    # General (1xxx)
    INTERNAL_ERROR = "E1000"
    INVALID_DEFINITION = "E1001"
    CYCLE_DETECTED = "E1002"
    UNKNOWN_DEPENDENCY = "E1003"
    RUN_NOT_FOUND = "E1004"
    RUN_STATE = "E1005"
    SINGLE_FLIGHT_REJECTED = "E1006"

    # Step execution (2xxx)
    TIMEOUT_EXCEEDED = "E2000"
    EXECUTION_ERROR = "E2001"

    # Build / publish (3xxx)
    BUILD_FAILURE = "E3000"
    AUTH_FAILURE = "E3001"
    PUBLISH_FAILURE = "E3002"
    PUBLISH_REJECTED = "E3003"

    # Provisioning (4xxx)
    PROVISION_TIMEOUT = "E4000"
    PROVISION_ERROR = "E4001"

    # Rollout (5xxx)
    ROLLOUT_TIMED_OUT = "E5000"
    ROLLOUT_DEGRADED = "E5001"
    REVISION_NOT_FOUND = "E5002"


class ShipyardException(Exception):
    """
    Base exception

    Attributes:
        error_code: stable error code
        message: operator-facing message
        detail: diagnostic detail (captured output, log tail)
    """

    retryable: bool = False
    terminal: bool = False

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
    ):
        self.error_code = error_code
        self.message = message
        self.detail = detail
        super().__init__(message)

    @property
    def kind(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "kind": self.kind,
            "code": self.error_code.value,
            "message": self.message,
        }
        if self.detail:
            result["detail"] = self.detail
        return result


# ============================================================
# Pipeline definition / orchestration
# ============================================================

class PipelineDefinitionError(ShipyardException):
    """Invalid pipeline document or stage graph"""

    terminal = True

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.INVALID_DEFINITION,
    ):
        super().__init__(error_code, message, detail)


class CycleDetectedError(PipelineDefinitionError):
    def __init__(self, cycle: list):
        super().__init__(
            f"Cycle detected in stage dependencies: {' -> '.join(cycle)}",
            error_code=ErrorCode.CYCLE_DETECTED,
        )
        self.cycle = cycle


class UnknownDependencyError(PipelineDefinitionError):
    def __init__(self, stage: str, dependency: str):
        super().__init__(
            f"Stage '{stage}' depends on unknown stage '{dependency}'",
            error_code=ErrorCode.UNKNOWN_DEPENDENCY,
        )


class SingleFlightRejected(ShipyardException):
    """A run of the same pipeline is already in progress"""

    terminal = True

    def __init__(self, pipeline_id: str, active_run_id: str):
        super().__init__(
            ErrorCode.SINGLE_FLIGHT_REJECTED,
            f"Pipeline '{pipeline_id}' already has an active run: {active_run_id}",
        )
        self.pipeline_id = pipeline_id
        self.active_run_id = active_run_id


class RunNotFound(ShipyardException):
    def __init__(self, run_id: str):
        super().__init__(ErrorCode.RUN_NOT_FOUND, f"Run not found: {run_id}")


class RunStateError(ShipyardException):
    """Illegal transition or mutation of a terminal run"""

    terminal = True

    def __init__(self, message: str):
        super().__init__(ErrorCode.RUN_STATE, message)


# ============================================================
# Step executor
# ============================================================

class TimeoutExceeded(ShipyardException):
    def __init__(self, what: str, timeout: float, detail: Optional[str] = None):
        super().__init__(
            ErrorCode.TIMEOUT_EXCEEDED,
            f"{what} did not complete within {timeout:g}s",
            detail,
        )
        self.timeout = timeout


class ExecutionError(ShipyardException):
    def __init__(self, command: str, exit_code: int, stderr: str = ""):
        super().__init__(
            ErrorCode.EXECUTION_ERROR,
            f"Command exited with code {exit_code}: {command}",
            stderr or None,
        )
        self.exit_code = exit_code
        self.stderr = stderr


# ============================================================
# Build / registry
# ============================================================

class BuildFailure(ShipyardException):
    def __init__(self, image_name: str, log_tail: str = "", reason: str = "build failed"):
        super().__init__(
            ErrorCode.BUILD_FAILURE,
            f"Build of '{image_name}' failed: {reason}",
            log_tail or None,
        )
        self.log_tail = log_tail


class AuthFailure(ShipyardException):
    terminal = True

    def __init__(self, registry: str, detail: Optional[str] = None):
        super().__init__(
            ErrorCode.AUTH_FAILURE,
            f"Authentication to registry '{registry}' failed",
            detail,
        )


class PublishFailure(ShipyardException):
    """Transient push failure (network class)"""

    retryable = True

    def __init__(self, reference: str, detail: Optional[str] = None):
        super().__init__(
            ErrorCode.PUBLISH_FAILURE,
            f"Push of '{reference}' failed",
            detail,
        )


class PublishRejected(ShipyardException):
    """Registry refused the push (unauthorized, denied, invalid)"""

    terminal = True

    def __init__(self, reference: str, detail: Optional[str] = None):
        super().__init__(
            ErrorCode.PUBLISH_REJECTED,
            f"Registry rejected push of '{reference}'",
            detail,
        )


# ============================================================
# Provisioning
# ============================================================

class ProvisionTimeout(ShipyardException):
    def __init__(self, resource: str, timeout: float, detail: Optional[str] = None):
        super().__init__(
            ErrorCode.PROVISION_TIMEOUT,
            f"Infrastructure '{resource}' not ready within {timeout:g}s",
            detail,
        )


class ProvisionError(ShipyardException):
    terminal = True

    def __init__(self, resource: str, detail: Optional[str] = None):
        super().__init__(
            ErrorCode.PROVISION_ERROR,
            f"Provisioning of '{resource}' failed",
            detail,
        )


# ============================================================
# Rollout
# ============================================================

class RolloutTimedOut(ShipyardException):
    def __init__(self, target: str, timeout: float, detail: Optional[str] = None):
        super().__init__(
            ErrorCode.ROLLOUT_TIMED_OUT,
            f"Rollout of '{target}' did not become healthy within {timeout:g}s",
            detail,
        )


class RolloutDegraded(ShipyardException):
    """Readiness dropped below the unavailability threshold; needs a decision"""

    terminal = True

    def __init__(self, target: str, detail: Optional[str] = None):
        super().__init__(
            ErrorCode.ROLLOUT_DEGRADED,
            f"Rollout of '{target}' is degraded",
            detail,
        )


class RevisionNotFound(ShipyardException):
    terminal = True

    def __init__(self, target: str, revision: Optional[int]):
        wanted = f"revision {revision}" if revision is not None else "a previous revision"
        super().__init__(
            ErrorCode.REVISION_NOT_FOUND,
            f"Deployment '{target}' has no {wanted} to roll back to",
        )
        self.revision = revision

"""
Custom exception hierarchy for the run artifact store.
Provides structured error handling with proper HTTP status codes.
"""

from typing import Any, Optional


class RunStoreError(Exception):
    """Base exception for all run store errors."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[dict[str, Any]] = None,
        status_code: int = 500,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(RunStoreError):
    """Error in application configuration."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            code="CONFIGURATION_ERROR",
            details=details,
            status_code=500,
        )


class UnknownFamilyError(RunStoreError):
    """A run family name that is not recognised."""

    def __init__(self, family: str) -> None:
        super().__init__(
            message=f"Unknown run family '{family}'",
            code="UNKNOWN_FAMILY",
            details={"family": family},
            status_code=404,
        )


# =============================================================================
# Not Found Errors (404)
# =============================================================================


class RunNotFoundError(RunStoreError):
    """Requested run directory does not exist."""

    def __init__(self, run_id: str) -> None:
        super().__init__(
            message=f"Run '{run_id}' not found",
            code="RUN_NOT_FOUND",
            details={"run_id": run_id},
            status_code=404,
        )


# =============================================================================
# Persistence Errors
# =============================================================================


class PersistenceError(RunStoreError):
    """Error reading or writing run artifacts."""

    def __init__(
        self,
        message: str,
        code: str = "PERSISTENCE_ERROR",
        details: Optional[dict[str, Any]] = None,
        status_code: int = 500,
    ) -> None:
        super().__init__(message=message, code=code, details=details, status_code=status_code)


class RunCreationError(PersistenceError):
    """The directory for a new run could not be created."""

    def __init__(self, family: str, path: str, reason: str) -> None:
        super().__init__(
            message=f"Could not create run directory for {family}: {reason}",
            code="RUN_CREATION_FAILED",
            details={"family": family, "path": path},
        )


class TransientWriteFailure(PersistenceError):
    """A single artifact could not be persisted. Generation continues."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(
            message=f"Failed to write artifact {path}: {reason}",
            code="TRANSIENT_WRITE_FAILURE",
            details={"path": path},
        )


class FinalizationFailure(PersistenceError):
    """The consolidated document of a run could not be written."""

    def __init__(self, family: str, reason: str, run_id: Optional[str] = None) -> None:
        details = {"family": family}
        if run_id:
            details["run_id"] = run_id

        super().__init__(
            message=f"Failed to finalize {family}: {reason}",
            code="FINALIZATION_FAILED",
            details=details,
        )


class CorruptArtifactError(PersistenceError):
    """An artifact exists on disk but cannot be parsed (yet)."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(
            message=f"Artifact {path} is not readable: {reason}",
            code="CORRUPT_ARTIFACT",
            details={"path": path},
            status_code=409,
        )


# =============================================================================
# Watch Errors
# =============================================================================


class WatchSetupFailure(RunStoreError):
    """The underlying filesystem watch could not be established."""

    def __init__(self, base_dir: str, pattern: str, reason: str) -> None:
        super().__init__(
            message=f"Could not watch {pattern} under {base_dir}: {reason}",
            code="WATCH_SETUP_FAILED",
            details={"base_dir": base_dir, "pattern": pattern},
            status_code=503,
        )


# =============================================================================
# Generation Errors (422)
# =============================================================================


class GenerationError(RunStoreError):
    """Error while driving a generation session."""

    def __init__(
        self,
        family: str,
        message: str = "Generation failed",
        state: Optional[str] = None,
    ) -> None:
        details = {"family": family}
        if state:
            details["state"] = state

        super().__init__(
            message=message,
            code="GENERATION_ERROR",
            details=details,
            status_code=422,
        )


class GenerationCancelledError(GenerationError):
    """A generation session was cancelled by its caller."""

    def __init__(self, family: str) -> None:
        super().__init__(family=family, message=f"Generation of {family} was cancelled")
        self.code = "GENERATION_CANCELLED"
        self.status_code = 409


class StateTransitionError(GenerationError):
    """Invalid state transition."""

    def __init__(self, family: str, from_state: str, to_state: str) -> None:
        super().__init__(
            family=family,
            message=f"Cannot move {family} generation from '{from_state}' to '{to_state}'",
            state=from_state,
        )
        self.code = "INVALID_STATE_TRANSITION"
        self.details["to_state"] = to_state

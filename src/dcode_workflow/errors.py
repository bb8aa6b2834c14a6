from __future__ import annotations


class WorkflowHaltedError(RuntimeError):
    """Base class for every fatal condition that stops a workflow run.

    These are raised synchronously from the run loop and are never retried by
    the engine. Retry and remediation belong in the manifest as ordinary
    fallback transitions.
    """


class InvalidStepIdError(WorkflowHaltedError):
    """A composite step identifier did not parse into exactly one group and one step."""


class UnknownGroupError(WorkflowHaltedError):
    pass


class UnknownStepError(WorkflowHaltedError):
    pass


class InvalidActionError(WorkflowHaltedError):
    """An action string is outside the JUMP / CALL / RETURN grammar."""


class InvalidPayloadPlanError(WorkflowHaltedError):
    pass


class MissingReturnAddressError(WorkflowHaltedError):
    """A CALL was issued from the last declared step of its group."""


class UnmatchedOutcomeError(WorkflowHaltedError):
    """An outcome matched no transition and the step declares no fallback."""

    def __init__(self, step_id: str, outcome: str, declared: list[str]) -> None:
        self.step_id = step_id
        self.outcome = outcome
        self.declared = declared
        choices = ", ".join(declared) or "none"
        super().__init__(
            f"Step {step_id!r} produced outcome {outcome!r} with no matching transition "
            f"and no fallback declared (declared outcomes: {choices})"
        )


class ReservedOutcomeError(WorkflowHaltedError):
    """An executor emitted the reserved fallback keyword as its own outcome."""


class IterationLimitExceededError(WorkflowHaltedError):
    pass


class UnknownExecutorError(WorkflowHaltedError):
    pass


class ManifestValidationError(ValueError):
    """Raised by the manifest loader when structural validation finds errors."""

    def __init__(self, message: str, issues: list[object] | None = None) -> None:
        super().__init__(message)
        self.issues = list(issues or [])

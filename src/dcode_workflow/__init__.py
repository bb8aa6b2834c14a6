from importlib.metadata import version

from .actions import ActionResult, Call, Jump, Return, execute_action, parse_action
from .context import ArtifactSnapshot, apply_payload_plan, assemble_context, inherited_static_context, parse_payload_plan
from .engine import WorkflowEngine
from .errors import (
    InvalidActionError,
    InvalidPayloadPlanError,
    InvalidStepIdError,
    IterationLimitExceededError,
    ManifestValidationError,
    MissingReturnAddressError,
    ReservedOutcomeError,
    UnknownExecutorError,
    UnknownGroupError,
    UnknownStepError,
    UnmatchedOutcomeError,
    WorkflowHaltedError,
)
from .manifest import load_manifest, parse_manifest, validate_manifest
from .models import (
    FALLBACK_OUTCOME,
    ContextEntry,
    ContextKind,
    ExecutorProfile,
    ExecutorResult,
    GroupDefinition,
    RunCheckpoint,
    RunStatus,
    StepDefinition,
    StepId,
    Transition,
    WorkflowManifest,
    WorkflowViewState,
    WorkOrder,
)


def get_version() -> str:
    try:
        return version("dcode-workflow")
    except Exception:
        return "0.0.0"


__all__ = [
    "ActionResult",
    "ArtifactSnapshot",
    "Call",
    "ContextEntry",
    "ContextKind",
    "ExecutorProfile",
    "ExecutorResult",
    "FALLBACK_OUTCOME",
    "GroupDefinition",
    "InvalidActionError",
    "InvalidPayloadPlanError",
    "InvalidStepIdError",
    "IterationLimitExceededError",
    "Jump",
    "ManifestValidationError",
    "MissingReturnAddressError",
    "ReservedOutcomeError",
    "Return",
    "RunCheckpoint",
    "RunStatus",
    "StepDefinition",
    "StepId",
    "Transition",
    "UnknownExecutorError",
    "UnknownGroupError",
    "UnknownStepError",
    "UnmatchedOutcomeError",
    "WorkOrder",
    "WorkflowEngine",
    "WorkflowHaltedError",
    "WorkflowManifest",
    "WorkflowViewState",
    "apply_payload_plan",
    "assemble_context",
    "execute_action",
    "get_version",
    "inherited_static_context",
    "load_manifest",
    "parse_action",
    "parse_manifest",
    "parse_payload_plan",
    "validate_manifest",
]

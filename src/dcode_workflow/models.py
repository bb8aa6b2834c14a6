from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, RootModel, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import InvalidStepIdError, UnknownGroupError, UnknownStepError

STEP_SEPARATOR = "__"
FALLBACK_OUTCOME = "SIGNAL:FAIL_DEFAULT"


class ContextKind:
    """Entry kinds emitted by the context assembler."""

    STEP_INSTRUCTIONS = "STEP_INSTRUCTIONS"
    EXECUTOR_PERSONA = "EXECUTOR_PERSONA"
    INHERITED_CONTEXT = "INHERITED_CONTEXT"
    STATIC_CONTEXT = "STATIC_CONTEXT"
    PRIMARY_ARTIFACT = "PRIMARY_ARTIFACT"
    RUN_METADATA = "RUN_METADATA"


def group_name_problem(name: str) -> str | None:
    """Describe why ``name`` cannot be a group name, or return ``None``."""
    if not name or name.strip() != name:
        return "must be non-empty without surrounding whitespace"
    if STEP_SEPARATOR in name or ":" in name:
        return f"must not contain {STEP_SEPARATOR!r} or ':'"
    if name.endswith("_"):
        return "must not end with '_'"
    return None


def step_name_problem(name: str) -> str | None:
    """Describe why ``name`` cannot be a step name, or return ``None``."""
    if not name or name.strip() != name:
        return "must be non-empty without surrounding whitespace"
    if STEP_SEPARATOR in name or ":" in name:
        return f"must not contain {STEP_SEPARATOR!r} or ':'"
    if name.startswith("_"):
        return "must not start with '_'"
    return None


@dataclass(frozen=True, order=True)
class StepId:
    """Structured form of a ``"<group>__<step>"`` identifier.

    A group may not end and a step may not start with ``_``, so the rendered
    id always splits back into the same pair.
    """

    group: str
    step: str

    def __post_init__(self) -> None:
        problem = group_name_problem(self.group)
        if problem is None:
            problem = step_name_problem(self.step)
        if problem is not None:
            raise InvalidStepIdError(f"Invalid step id ({self.group!r}, {self.step!r}): {problem}")

    @classmethod
    def parse(cls, raw: str) -> StepId:
        if not isinstance(raw, str):
            raise InvalidStepIdError(f"Step id must be a string, got {type(raw).__name__}")
        parts = raw.split(STEP_SEPARATOR)
        if len(parts) != 2:
            raise InvalidStepIdError(f'Invalid step id "{raw}". Must be "Group{STEP_SEPARATOR}Step".')
        try:
            return cls(group=parts[0], step=parts[1])
        except InvalidStepIdError as exc:
            raise InvalidStepIdError(f'Invalid step id "{raw}": {exc}') from exc

    def __str__(self) -> str:
        return f"{self.group}{STEP_SEPARATOR}{self.step}"


class ContextEntry(BaseModel):
    """One atomic piece of the running context trail."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: str
    content: str


class _ManifestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, extra="forbid")


class Transition(_ManifestModel):
    on_outcome: str
    action: str

    @field_validator("on_outcome", "action")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("transition fields must be non-empty")
        return value


class StepDefinition(_ManifestModel):
    """Stateless unit of work: one executor call and one transition table."""

    executor_ref: str
    payload_assembly_plan: list[str] = Field(default_factory=list)
    transitions: list[Transition] = Field(default_factory=list)
    instructions: str = ""
    artifacts: list[str] = Field(default_factory=list)

    @field_validator("executor_ref")
    @classmethod
    def _executor_ref_non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("executorRef must be non-empty")
        return value

    @property
    def declared_outcomes(self) -> list[str]:
        return [transition.on_outcome for transition in self.transitions]

    def find_transition(self, outcome: str) -> tuple[Transition | None, bool]:
        """Return the transition for ``outcome`` and whether it came from the fallback entry."""
        for transition in self.transitions:
            if transition.on_outcome == outcome:
                return transition, False
        for transition in self.transitions:
            if transition.on_outcome == FALLBACK_OUTCOME:
                return transition, True
        return None, False


class GroupDefinition(_ManifestModel):
    entry_step: str
    inherits_context: bool = True
    static_context: dict[str, Any] = Field(default_factory=dict)
    steps: dict[str, StepDefinition]

    @field_validator("steps")
    @classmethod
    def _steps_well_named(cls, value: dict[str, StepDefinition]) -> dict[str, StepDefinition]:
        if not value:
            raise ValueError("a group must declare at least one step")
        for name in value:
            problem = step_name_problem(name)
            if problem is not None:
                raise ValueError(f"invalid step name {name!r}: {problem}")
        return value

    def step_names(self) -> list[str]:
        return list(self.steps)


class WorkflowManifest(RootModel[dict[str, GroupDefinition]]):
    """The whole program: group name -> group definition, immutable for a run."""

    @model_validator(mode="before")
    @classmethod
    def _unwrap_groups_key(cls, data: Any) -> Any:
        if isinstance(data, dict) and set(data) == {"groups"} and isinstance(data["groups"], dict):
            inner = data["groups"]
            if all(isinstance(value, dict) and "steps" in value for value in inner.values()):
                return inner
        return data

    @field_validator("root")
    @classmethod
    def _groups_well_named(cls, value: dict[str, GroupDefinition]) -> dict[str, GroupDefinition]:
        if not value:
            raise ValueError("manifest must declare at least one group")
        for name in value:
            problem = group_name_problem(name)
            if problem is not None:
                raise ValueError(f"invalid group name {name!r}: {problem}")
        return value

    @property
    def groups(self) -> dict[str, GroupDefinition]:
        return self.root

    def group(self, name: str) -> GroupDefinition:
        group = self.root.get(name)
        if group is None:
            raise UnknownGroupError(f'Group "{name}" not found in manifest.')
        return group

    def step(self, step_id: StepId) -> StepDefinition:
        group = self.root.get(step_id.group)
        if group is None:
            raise UnknownGroupError(f'Group "{step_id.group}" not found for step "{step_id}".')
        step = group.steps.get(step_id.step)
        if step is None:
            raise UnknownStepError(f'Step "{step_id.step}" not found in group "{step_id.group}".')
        return step

    def entry_step_id(self, group_name: str) -> StepId:
        group = self.group(group_name)
        raw = group.entry_step
        step_id = StepId.parse(raw) if STEP_SEPARATOR in raw else StepId(group=group_name, step=raw)
        if step_id.group != group_name:
            raise UnknownStepError(
                f'Entry step "{raw}" of group "{group_name}" belongs to another group.'
            )
        self.step(step_id)
        return step_id

    def next_step_id(self, step_id: StepId) -> StepId | None:
        """Return the step declared right after ``step_id`` in its group, if any."""
        names = self.group(step_id.group).step_names()
        try:
            index = names.index(step_id.step)
        except ValueError as exc:
            raise UnknownStepError(f'Step "{step_id.step}" not found in group "{step_id.group}".') from exc
        if index + 1 >= len(names):
            return None
        return StepId(group=step_id.group, step=names[index + 1])


class WorkOrder(BaseModel):
    executor_ref: str
    context: list[ContextEntry]
    sandbox_path: str
    step_id: str = ""
    run_id: str = ""


class ExecutorResult(BaseModel):
    new_payload: list[ContextEntry]
    outcome: str

    @field_validator("outcome")
    @classmethod
    def _outcome_non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("outcome must be non-empty")
        return value


class ExecutorKind(str, Enum):
    CHAT = "chat"
    AGENT = "agent"
    COMMAND = "command"


class ExecutorConfig(BaseModel):
    """Declarative config for one executor handler, loaded from executors.json."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    ref: str
    kind: ExecutorKind
    persona: str = ""
    model_tier: str = "efficient"
    temperature: float = 0.0
    max_completion_tokens: int | None = None
    outcomes: list[str] = Field(default_factory=list)
    command: list[str] = Field(default_factory=list)
    success_outcome: str = "SUCCESS"
    failure_outcome: str = "FAILURE"
    timeout_seconds: int | None = None

    @model_validator(mode="after")
    def _kind_requirements(self) -> ExecutorConfig:
        if not self.ref.strip():
            raise ValueError("executor ref must be non-empty")
        if self.kind == ExecutorKind.COMMAND and not self.command:
            raise ValueError(f"command executor {self.ref!r} requires a non-empty command")
        if FALLBACK_OUTCOME in (self.success_outcome, self.failure_outcome, *self.outcomes):
            raise ValueError(f"executor {self.ref!r} may not emit the reserved outcome {FALLBACK_OUTCOME}")
        return self


class ExecutorProfile(BaseModel):
    """Persona and configuration an executor contributes to its steps' context."""

    model_config = ConfigDict(frozen=True)

    ref: str
    persona: str = ""
    settings: dict[str, Any] = Field(default_factory=dict)


class StepStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETE = "complete"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    PAUSED = "paused"


class TransitionEdge(BaseModel):
    from_step: str
    on_outcome: str
    action: str


class GraphShape(BaseModel):
    group: str
    steps: list[str] = Field(default_factory=list)
    transitions: list[TransitionEdge] = Field(default_factory=list)


class LastTransition(BaseModel):
    from_step: str
    to_step: str | None
    outcome: str
    action: str
    matched_fallback: bool = False


class StepLog(BaseModel):
    context: list[ContextEntry] = Field(default_factory=list)
    conversation: list[ContextEntry] = Field(default_factory=list)


class WorkflowViewState(BaseModel):
    """Observability snapshot published to the state sink."""

    run_id: str
    graph: GraphShape
    statuses: dict[str, StepStatus] = Field(default_factory=dict)
    current_step: str | None = None
    call_stack: list[str] = Field(default_factory=list)
    last_transition: LastTransition | None = None
    execution_log: dict[str, StepLog] = Field(default_factory=dict)
    iteration: int = 0
    is_paused: bool = False
    is_complete: bool = False
    error_message: str | None = None


class RunCheckpoint(BaseModel):
    """Resumable runtime state of a paused engine."""

    run_id: str
    sandbox_path: str
    current_step: str | None
    payload: list[ContextEntry] = Field(default_factory=list)
    call_stack: list[str] = Field(default_factory=list)
    completed_steps: list[str] = Field(default_factory=list)
    iteration: int = 0
    last_transition: LastTransition | None = None


class Severity(str, Enum):
    ERROR = "ERROR"
    WARNING = "WARNING"


class ValidationIssue(BaseModel):
    severity: Severity
    path: str
    field: str
    message: str


class ValidationReport(BaseModel):
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)

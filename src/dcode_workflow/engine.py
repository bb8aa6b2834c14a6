"""The workflow run loop.

One ``WorkflowEngine`` owns the mutable runtime state of exactly one run:
current step, payload, call stack and the observability bookkeeping. Every
collaborator (manifest, executor service, artifact reader, callbacks) is passed
in explicitly, so any number of engines can run side by side in one process.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING

from pydantic import ValidationError

from .actions import Call, CallStack, execute_action, parse_action
from .context import ArtifactSnapshot, assemble_context
from .errors import IterationLimitExceededError, ReservedOutcomeError, UnmatchedOutcomeError
from .models import (
    FALLBACK_OUTCOME,
    ContextEntry,
    ExecutorProfile,
    ExecutorResult,
    GraphShape,
    LastTransition,
    RunCheckpoint,
    RunStatus,
    StepId,
    StepLog,
    StepStatus,
    TransitionEdge,
    WorkflowManifest,
    WorkflowViewState,
    WorkOrder,
)

if TYPE_CHECKING:
    from .backends import ArtifactReader
    from .executors import ExecutorService

logger = logging.getLogger(__name__)

StateCallback = Callable[[WorkflowViewState], None]

DEFAULT_MAX_ITERATIONS = 1_000


class WorkflowEngine:
    """Interprets a manifest one step at a time.

    Args:
        manifest: The validated, immutable program for this run.
        executor_service: Receives one work order per step.
        artifact_reader: Reads each step's declared artifacts fresh from the
            sandbox. Without one, the artifact layer is empty.
        on_state_update: Called with a snapshot after every step, on pause,
            on completion and on a fatal error.
        on_completion: Called once with the final snapshot when the graph
            terminates.
        executor_profiles: Persona and config per executor ref, used for the
            contract layer of the context.
        max_iterations: Upper bound on executor dispatches for one run.
        run_id: Identifier used in snapshots and checkpoints.
    """

    def __init__(
        self,
        manifest: WorkflowManifest,
        executor_service: ExecutorService,
        *,
        artifact_reader: ArtifactReader | None = None,
        on_state_update: StateCallback | None = None,
        on_completion: StateCallback | None = None,
        executor_profiles: Mapping[str, ExecutorProfile] | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        run_id: str | None = None,
    ) -> None:
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got: {max_iterations}")
        self.manifest = manifest
        self.run_id = run_id or uuid.uuid4().hex
        self.max_iterations = max_iterations
        self._executor_service = executor_service
        self._artifact_reader = artifact_reader
        self._on_state_update = on_state_update
        self._on_completion = on_completion
        self._executor_profiles = dict(executor_profiles or {})

        self._sandbox_path: str | None = None
        self._current_step: StepId | None = None
        self._display_group: str | None = None
        self._payload: list[ContextEntry] = []
        self._call_stack: CallStack = ()
        self._completed: list[StepId] = []
        self._last_transition: LastTransition | None = None
        self._execution_log: dict[str, StepLog] = {}
        self._iteration = 0
        self._paused = False
        self._running = False
        self._complete = False

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def current_step(self) -> StepId | None:
        return self._current_step

    @property
    def payload(self) -> tuple[ContextEntry, ...]:
        return tuple(self._payload)

    @property
    def call_stack(self) -> CallStack:
        return self._call_stack

    @property
    def iteration(self) -> int:
        return self._iteration

    @property
    def last_transition(self) -> LastTransition | None:
        return self._last_transition

    @property
    def execution_log(self) -> dict[str, StepLog]:
        return dict(self._execution_log)

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_complete(self) -> bool:
        return self._complete

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def run(self, start_group: str, sandbox_path: str) -> RunStatus:
        """Start a fresh run at ``start_group``'s entry step.

        Returns when the graph terminates (``COMPLETED``) or a pause request is
        observed at the top of an iteration (``PAUSED``).

        Raises:
            WorkflowHaltedError: On any structural or transition failure.
            RuntimeError: If this engine is already running.
        """
        if self._running:
            raise RuntimeError(f"Workflow run {self.run_id} is already in progress")
        if not sandbox_path.strip():
            raise ValueError("sandbox_path must be non-empty")

        entry = self.manifest.entry_step_id(start_group)
        self._sandbox_path = sandbox_path
        self._current_step = entry
        self._display_group = entry.group
        self._payload = []
        self._call_stack = ()
        self._completed = []
        self._last_transition = None
        self._execution_log = {}
        self._iteration = 0
        self._paused = False
        self._complete = False
        logger.info("Starting workflow run %s at %s (sandbox=%s)", self.run_id, entry, sandbox_path)
        return await self._loop()

    async def resume(self) -> RunStatus:
        """Continue a paused or restored run from exactly where it stopped."""
        if self._running:
            raise RuntimeError(f"Workflow run {self.run_id} is already in progress")
        if self._sandbox_path is None:
            raise RuntimeError(f"Workflow run {self.run_id} has not been started or restored")
        if self._complete:
            raise RuntimeError(f"Workflow run {self.run_id} has already completed")
        self._paused = False
        logger.info("Resuming workflow run %s at %s", self.run_id, self._current_step)
        return await self._loop()

    def pause(self) -> None:
        """Request a pause; the loop stops before dispatching its next step."""
        if not self._paused:
            logger.info("Pause requested for workflow run %s", self.run_id)
        self._paused = True

    def checkpoint(self) -> RunCheckpoint:
        if self._running:
            raise RuntimeError("Cannot checkpoint a run while a step is in flight; pause it first")
        if self._sandbox_path is None:
            raise RuntimeError(f"Workflow run {self.run_id} has not been started")
        return RunCheckpoint(
            run_id=self.run_id,
            sandbox_path=self._sandbox_path,
            current_step=str(self._current_step) if self._current_step is not None else None,
            payload=list(self._payload),
            call_stack=[str(address) for address in self._call_stack],
            completed_steps=[str(step_id) for step_id in self._completed],
            iteration=self._iteration,
            last_transition=self._last_transition,
        )

    @classmethod
    def restore(
        cls,
        checkpoint: RunCheckpoint,
        manifest: WorkflowManifest,
        executor_service: ExecutorService,
        **kwargs: object,
    ) -> WorkflowEngine:
        """Rebuild a paused engine from ``checkpoint``; call ``resume()`` to continue.

        Every step id in the checkpoint is re-resolved against ``manifest``, so a
        checkpoint taken against a different program fails here, not mid-run.
        """
        engine = cls(manifest, executor_service, run_id=checkpoint.run_id, **kwargs)  # type: ignore[arg-type]
        current = StepId.parse(checkpoint.current_step) if checkpoint.current_step is not None else None
        stack = tuple(StepId.parse(raw) for raw in checkpoint.call_stack)
        completed = [StepId.parse(raw) for raw in checkpoint.completed_steps]
        for step_id in (current, *stack, *completed):
            if step_id is not None:
                manifest.step(step_id)

        engine._sandbox_path = checkpoint.sandbox_path
        engine._current_step = current
        engine._display_group = current.group if current is not None else (completed[-1].group if completed else None)
        engine._payload = list(checkpoint.payload)
        engine._call_stack = stack
        engine._completed = completed
        engine._iteration = checkpoint.iteration
        engine._last_transition = checkpoint.last_transition
        engine._paused = True
        logger.info("Restored workflow run %s at %s", engine.run_id, current)
        return engine

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _loop(self) -> RunStatus:
        self._running = True
        try:
            while self._current_step is not None:
                if self._paused:
                    logger.info("Workflow run %s paused at %s", self.run_id, self._current_step)
                    self._publish()
                    return RunStatus.PAUSED
                await self._execute_current_step()
                self._publish()
        except Exception as exc:
            logger.error("Workflow run %s halted: %s", self.run_id, exc)
            self._publish(error_message=f"{type(exc).__name__}: {exc}")
            raise
        finally:
            self._running = False

        self._complete = True
        snapshot = self._publish()
        if self._on_completion is not None:
            self._on_completion(snapshot)
        logger.info("Workflow run %s completed after %d steps", self.run_id, self._iteration)
        return RunStatus.COMPLETED

    async def _execute_current_step(self) -> None:
        step_id = self._current_step
        assert step_id is not None
        assert self._sandbox_path is not None
        step = self.manifest.step(step_id)
        self._display_group = step_id.group

        if self._iteration >= self.max_iterations:
            raise IterationLimitExceededError(
                f"Workflow run {self.run_id} exceeded {self.max_iterations} steps at {step_id}"
            )
        self._iteration += 1

        artifacts: list[ArtifactSnapshot] = []
        if step.artifacts:
            if self._artifact_reader is None:
                logger.debug("Step %s declares artifacts but no artifact reader is configured", step_id)
            else:
                artifacts = self._artifact_reader.read(self._sandbox_path, step.artifacts)

        context = assemble_context(
            manifest=self.manifest,
            step_id=step_id,
            payload=self._payload,
            call_stack=self._call_stack,
            sandbox_path=self._sandbox_path,
            executor_profile=self._executor_profiles.get(step.executor_ref),
            artifacts=artifacts,
            run_id=self.run_id,
            iteration=self._iteration,
        )
        work_order = WorkOrder(
            executor_ref=step.executor_ref,
            context=context,
            sandbox_path=self._sandbox_path,
            step_id=str(step_id),
            run_id=self.run_id,
        )
        logger.debug("Dispatching %s to %s with %d context entries", step_id, step.executor_ref, len(context))
        result = await self._executor_service.execute(work_order)
        if not isinstance(result, ExecutorResult):
            try:
                result = ExecutorResult.model_validate(result)
            except ValidationError as exc:
                raise RuntimeError(f"Executor {step.executor_ref} returned an invalid result: {exc}") from exc

        self._payload = list(result.new_payload)
        sent = {entry.id for entry in context}
        self._execution_log[str(step_id)] = StepLog(
            context=context,
            conversation=[entry for entry in result.new_payload if entry.id not in sent],
        )
        outcome = result.outcome
        if outcome == FALLBACK_OUTCOME:
            raise ReservedOutcomeError(
                f"Executor {step.executor_ref} emitted the reserved outcome {FALLBACK_OUTCOME} at {step_id}"
            )
        if step_id not in self._completed:
            self._completed.append(step_id)

        transition, matched_fallback = step.find_transition(outcome)
        if transition is None:
            raise UnmatchedOutcomeError(str(step_id), outcome, step.declared_outcomes)
        if matched_fallback:
            logger.debug("Outcome %r at %s routed through the fallback transition", outcome, step_id)

        action = parse_action(transition.action)
        return_address = self.manifest.next_step_id(step_id) if isinstance(action, Call) else None
        reduced = execute_action(
            action,
            self._call_stack,
            resolve_entry=self.manifest.entry_step_id,
            return_address=return_address,
        )
        if reduced.next_step is not None:
            self.manifest.step(reduced.next_step)
        self._call_stack = reduced.call_stack
        self._current_step = reduced.next_step
        self._last_transition = LastTransition(
            from_step=str(step_id),
            to_step=str(reduced.next_step) if reduced.next_step is not None else None,
            outcome=outcome,
            action=transition.action,
            matched_fallback=matched_fallback,
        )

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def _graph_shape(self) -> GraphShape:
        if self._display_group is None:
            return GraphShape(group="")
        group = self.manifest.group(self._display_group)
        steps = [str(StepId(self._display_group, name)) for name in group.step_names()]
        transitions = [
            TransitionEdge(from_step=str(StepId(self._display_group, name)), on_outcome=t.on_outcome, action=t.action)
            for name, step in group.steps.items()
            for t in step.transitions
        ]
        return GraphShape(group=self._display_group, steps=steps, transitions=transitions)

    def _statuses(self, graph: GraphShape) -> dict[str, StepStatus]:
        current = str(self._current_step) if self._current_step is not None else None
        completed = {str(step_id) for step_id in self._completed}
        statuses: dict[str, StepStatus] = {}
        for raw in graph.steps:
            if raw == current:
                statuses[raw] = StepStatus.ACTIVE
            elif raw in completed:
                statuses[raw] = StepStatus.COMPLETE
            else:
                statuses[raw] = StepStatus.PENDING
        return statuses

    def snapshot(self, *, error_message: str | None = None) -> WorkflowViewState:
        graph = self._graph_shape()
        return WorkflowViewState(
            run_id=self.run_id,
            graph=graph,
            statuses=self._statuses(graph),
            current_step=str(self._current_step) if self._current_step is not None else None,
            call_stack=[str(address) for address in self._call_stack],
            last_transition=self._last_transition,
            execution_log=dict(self._execution_log),
            iteration=self._iteration,
            is_paused=self._paused,
            is_complete=self._complete,
            error_message=error_message,
        )

    def _publish(self, *, error_message: str | None = None) -> WorkflowViewState:
        snapshot = self.snapshot(error_message=error_message)
        if self._on_state_update is not None:
            self._on_state_update(snapshot)
        return snapshot

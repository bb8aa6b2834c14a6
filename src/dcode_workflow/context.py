"""Layered context assembly for a single workflow step.

Context is built from five layers, always in this order:

1. the running payload, filtered by the step's payload assembly plan
2. the step's own instructions and its executor's persona
3. static context inherited along the call chain, cut at inheritance boundaries
4. the primary artifacts read fresh from the sandbox for this step
5. run metadata, always last

Given the same inputs the output is identical, entry ids included.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from .canonical import content_digest, to_canonical_json
from .errors import InvalidPayloadPlanError
from .models import ContextEntry, ContextKind, ExecutorProfile, StepId, WorkflowManifest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeepAll:
    pass


@dataclass(frozen=True)
class Clear:
    pass


@dataclass(frozen=True)
class KeepLast:
    count: int


@dataclass(frozen=True)
class KeepKind:
    kind: str


@dataclass(frozen=True)
class DropKind:
    kind: str


@dataclass(frozen=True)
class MergeStatic:
    key: str


PlanOp = KeepAll | Clear | KeepLast | KeepKind | DropKind | MergeStatic

# Kinds rebuilt by the assembler for every step. Copies of them carried in the
# payload are dropped so the inheritance boundary holds for the whole context.
REGENERATED_KINDS = frozenset(
    {
        ContextKind.EXECUTOR_PERSONA,
        ContextKind.INHERITED_CONTEXT,
        ContextKind.STATIC_CONTEXT,
        ContextKind.PRIMARY_ARTIFACT,
        ContextKind.RUN_METADATA,
    }
)


@dataclass(frozen=True)
class ArtifactSnapshot:
    """Content of one sandbox file as read for the current step; ``None`` when absent."""

    path: str
    content: str | None


def _parse_plan_op(raw: str) -> PlanOp:
    if raw == "KEEP_ALL":
        return KeepAll()
    if raw == "CLEAR":
        return Clear()

    verb, sep, argument = raw.partition(":")
    if not sep or not argument:
        raise InvalidPayloadPlanError(f'Unknown or incomplete payload plan operation: "{raw}"')
    if verb == "KEEP_LAST":
        try:
            count = int(argument)
        except ValueError as exc:
            raise InvalidPayloadPlanError(f'KEEP_LAST expects an integer, got "{argument}"') from exc
        if count < 0:
            raise InvalidPayloadPlanError(f"KEEP_LAST expects a non-negative count, got {count}")
        return KeepLast(count=count)
    if verb == "KEEP_KIND":
        return KeepKind(kind=argument)
    if verb == "DROP_KIND":
        return DropKind(kind=argument)
    if verb == "MERGE":
        scope, sep, key = argument.partition(":")
        if scope == "STATIC_CONTEXT" and sep and key:
            return MergeStatic(key=key)
    raise InvalidPayloadPlanError(f'Unknown payload plan operation: "{raw}"')


def parse_payload_plan(plan: Sequence[str]) -> tuple[PlanOp, ...]:
    return tuple(_parse_plan_op(raw) for raw in plan)


def apply_payload_plan(ops: Sequence[PlanOp], payload: Sequence[ContextEntry]) -> list[ContextEntry]:
    """Run the plan over a working copy of ``payload``; ``payload`` itself is never touched."""
    working = list(payload)
    for op in ops:
        if isinstance(op, KeepAll):
            working = list(payload)
        elif isinstance(op, Clear):
            working = []
        elif isinstance(op, KeepLast):
            working = working[-op.count :] if op.count else []
        elif isinstance(op, KeepKind):
            working = [entry for entry in working if entry.kind == op.kind]
        elif isinstance(op, DropKind):
            working = [entry for entry in working if entry.kind != op.kind]
    return working


def call_chain(step_id: StepId, call_stack: Sequence[StepId]) -> list[str]:
    """Groups from the most recently entered outward: current group, then each caller."""
    return [step_id.group, *(address.group for address in reversed(call_stack))]


def inherited_static_context(
    manifest: WorkflowManifest,
    step_id: StepId,
    call_stack: Sequence[StepId],
) -> list[tuple[str, str, Any]]:
    """Collect ``(group, key, value)`` static context visible to ``step_id``.

    The current group always contributes. If it does not inherit, nothing above
    it does. Otherwise callers contribute outward until the first caller whose
    ``inherits_context`` is false, which is itself excluded. Nearer groups win on
    key collisions.
    """
    chain = call_chain(step_id, call_stack)
    visible: list[tuple[str, str, Any]] = []
    seen_groups: set[str] = set()
    seen_keys: set[str] = set()

    for depth, group_name in enumerate(chain):
        group = manifest.group(group_name)
        if depth > 0 and not group.inherits_context:
            break
        if group_name not in seen_groups:
            seen_groups.add(group_name)
            for key, value in group.static_context.items():
                if key in seen_keys:
                    continue
                seen_keys.add(key)
                visible.append((group_name, key, value))
        if depth == 0 and not group.inherits_context:
            break
    return visible


def _entry(step_id: StepId, kind: str, content: str, *salt: Any) -> ContextEntry:
    return ContextEntry(id=f"{kind.lower()}-{content_digest(str(step_id), kind, content, *salt)}", kind=kind, content=content)


def _contract_layer(step_id: StepId, instructions: str, profile: ExecutorProfile | None) -> list[ContextEntry]:
    entries: list[ContextEntry] = []
    if instructions.strip():
        entries.append(_entry(step_id, ContextKind.STEP_INSTRUCTIONS, instructions))
    if profile is not None and (profile.persona.strip() or profile.settings):
        lines = [profile.persona.strip()] if profile.persona.strip() else []
        if profile.settings:
            lines.append(f"executor_config: {to_canonical_json(profile.settings)}")
        entries.append(_entry(step_id, ContextKind.EXECUTOR_PERSONA, "\n".join(lines), profile.ref))
    return entries


def _static_layer(
    step_id: StepId,
    inherited: Sequence[tuple[str, str, Any]],
    merge_keys: Sequence[str],
) -> list[ContextEntry]:
    merged = set(merge_keys)
    entries = [
        _entry(step_id, ContextKind.INHERITED_CONTEXT, f"{key}: {to_canonical_json(value)}", group)
        for group, key, value in inherited
        if key not in merged
    ]
    by_key = {key: (group, value) for group, key, value in inherited}
    for key in merge_keys:
        if key not in by_key:
            logger.debug("MERGE:STATIC_CONTEXT:%s has no visible value for %s", key, step_id)
            continue
        group, value = by_key[key]
        content = value if isinstance(value, str) else to_canonical_json(value)
        entries.append(_entry(step_id, ContextKind.STATIC_CONTEXT, content, group, key))
    return entries


def _artifact_layer(step_id: StepId, artifacts: Sequence[ArtifactSnapshot]) -> list[ContextEntry]:
    entries: list[ContextEntry] = []
    for artifact in artifacts:
        if artifact.content is None:
            content = f"--- {artifact.path} ---\n(file does not exist yet)"
        else:
            content = f"--- {artifact.path} ---\n{artifact.content}"
        entries.append(_entry(step_id, ContextKind.PRIMARY_ARTIFACT, content, artifact.path))
    return entries


def _metadata_layer(
    step_id: StepId,
    *,
    sandbox_path: str,
    call_stack: Sequence[StepId],
    run_id: str,
    iteration: int,
) -> ContextEntry:
    metadata = {
        "run_id": run_id,
        "sandbox_path": sandbox_path,
        "step_id": str(step_id),
        "group": step_id.group,
        "step": step_id.step,
        "call_stack": [str(address) for address in call_stack],
        "iteration": iteration,
    }
    return _entry(step_id, ContextKind.RUN_METADATA, to_canonical_json(metadata))


def assemble_context(
    *,
    manifest: WorkflowManifest,
    step_id: StepId,
    payload: Sequence[ContextEntry],
    call_stack: Sequence[StepId],
    sandbox_path: str,
    executor_profile: ExecutorProfile | None = None,
    artifacts: Sequence[ArtifactSnapshot] = (),
    run_id: str = "",
    iteration: int = 0,
) -> list[ContextEntry]:
    """Build the ordered context entries for ``step_id``.

    Payload entries of the kinds this function generates itself, and payload
    entries sharing an id with a freshly generated entry, are dropped before
    the payload plan runs, so they never appear twice.

    Raises:
        InvalidPayloadPlanError: If the step's payload plan is outside the closed verb set.
        UnknownGroupError: If the step or a caller on the stack names a missing group.
        UnknownStepError: If the step is not declared in its group.
    """
    step = manifest.step(step_id)
    ops = parse_payload_plan(step.payload_assembly_plan)
    merge_keys = [op.key for op in ops if isinstance(op, MergeStatic)]

    generated: list[ContextEntry] = [
        *_contract_layer(step_id, step.instructions, executor_profile),
        *_static_layer(step_id, inherited_static_context(manifest, step_id, call_stack), merge_keys),
        *_artifact_layer(step_id, artifacts),
        _metadata_layer(
            step_id,
            sandbox_path=sandbox_path,
            call_stack=call_stack,
            run_id=run_id,
            iteration=iteration,
        ),
    ]
    # A revisited step regenerates its instructions under the same id.
    generated_ids = {entry.id for entry in generated}
    history = [
        entry for entry in payload if entry.kind not in REGENERATED_KINDS and entry.id not in generated_ids
    ]
    return [*apply_payload_plan(ops, history), *generated]

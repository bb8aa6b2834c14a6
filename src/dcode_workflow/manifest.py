from __future__ import annotations

import json
import logging
from collections import Counter
from collections.abc import Collection
from pathlib import Path

from pydantic import ValidationError

from .actions import Call, Jump, parse_action
from .context import parse_payload_plan
from .errors import ManifestValidationError, WorkflowHaltedError
from .models import (
    FALLBACK_OUTCOME,
    Severity,
    StepId,
    ValidationIssue,
    ValidationReport,
    WorkflowManifest,
)
from .state_store import read_json_text

logger = logging.getLogger(__name__)


def _issue(severity: Severity, path: str, field: str, message: str) -> ValidationIssue:
    return ValidationIssue(severity=severity, path=path, field=field, message=message)


def validate_manifest(
    manifest: WorkflowManifest,
    *,
    executor_refs: Collection[str] | None = None,
) -> ValidationReport:
    """Check the cross-references pydantic cannot see on its own.

    Args:
        manifest: A manifest that already passed schema validation.
        executor_refs: Registered executor refs. When given, every step's
            ``executorRef`` must be one of them.

    Returns:
        A report whose ``errors`` make the manifest unrunnable and whose
        ``warnings`` flag likely authoring mistakes.
    """
    issues: list[ValidationIssue] = []

    for group_name, group in manifest.groups.items():
        g_path = f"{group_name}"
        try:
            manifest.entry_step_id(group_name)
        except WorkflowHaltedError as exc:
            issues.append(_issue(Severity.ERROR, g_path, "entryStep", str(exc)))

        for step_name, step in group.steps.items():
            step_id = StepId(group_name, step_name)
            s_path = f"{group_name}.steps.{step_name}"

            if executor_refs is not None and step.executor_ref not in executor_refs:
                issues.append(
                    _issue(Severity.ERROR, s_path, "executorRef", f"Unknown executor {step.executor_ref!r}")
                )

            try:
                parse_payload_plan(step.payload_assembly_plan)
            except WorkflowHaltedError as exc:
                issues.append(_issue(Severity.ERROR, s_path, "payloadAssemblyPlan", str(exc)))

            for outcome, count in Counter(step.declared_outcomes).items():
                if count > 1:
                    issues.append(
                        _issue(
                            Severity.ERROR,
                            s_path,
                            "transitions",
                            f"Outcome {outcome!r} is declared {count} times",
                        )
                    )

            for t_idx, transition in enumerate(step.transitions):
                t_path = f"{s_path}.transitions[{t_idx}]"
                try:
                    action = parse_action(transition.action)
                except WorkflowHaltedError as exc:
                    issues.append(_issue(Severity.ERROR, t_path, "action", str(exc)))
                    continue
                if isinstance(action, Jump):
                    try:
                        manifest.step(action.target)
                    except WorkflowHaltedError as exc:
                        issues.append(_issue(Severity.ERROR, t_path, "action", f"JUMP target missing: {exc}"))
                elif isinstance(action, Call):
                    if action.group not in manifest.groups:
                        issues.append(
                            _issue(Severity.ERROR, t_path, "action", f"CALL target group {action.group!r} not found")
                        )
                    if manifest.next_step_id(step_id) is None:
                        issues.append(
                            _issue(
                                Severity.ERROR,
                                t_path,
                                "action",
                                f"CALL from {step_id} has no following step to return to",
                            )
                        )

            if not step.transitions:
                issues.append(
                    _issue(
                        Severity.ERROR,
                        s_path,
                        "transitions",
                        "Step declares no transitions; end a run with RETURN instead",
                    )
                )
            elif FALLBACK_OUTCOME not in step.declared_outcomes:
                issues.append(
                    _issue(
                        Severity.WARNING,
                        s_path,
                        "transitions",
                        f"No {FALLBACK_OUTCOME} transition; an undeclared outcome will halt the run",
                    )
                )

    return ValidationReport(
        errors=[issue for issue in issues if issue.severity == Severity.ERROR],
        warnings=[issue for issue in issues if issue.severity == Severity.WARNING],
    )


def parse_manifest(text: str, *, source: str = "<manifest>") -> WorkflowManifest:
    """Parse manifest JSON text into a schema-valid ``WorkflowManifest``.

    Raises:
        ManifestValidationError: If the text is not JSON or fails schema validation.
    """
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ManifestValidationError(f"workflow manifest {source} is not valid JSON: {exc}") from exc
    try:
        return WorkflowManifest.model_validate(raw)
    except ValidationError as exc:
        raise ManifestValidationError(f"workflow manifest {source} failed validation: {exc}") from exc


def load_manifest(path: Path, *, executor_refs: Collection[str] | None = None) -> WorkflowManifest:
    """Load, schema-check and cross-reference-check the manifest at ``path``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ManifestValidationError: If the manifest has any validation errors.
    """
    manifest = parse_manifest(read_json_text(path, "workflow manifest"), source=str(path))
    report = validate_manifest(manifest, executor_refs=executor_refs)
    for warning in report.warnings:
        logger.warning("Manifest %s: %s: %s", path, warning.path, warning.message)
    if report.errors:
        details = "; ".join(f"{issue.path}.{issue.field}: {issue.message}" for issue in report.errors)
        raise ManifestValidationError(f"workflow manifest {path} is invalid: {details}", report.errors)
    logger.info("Loaded manifest %s with %d groups", path, len(manifest.groups))
    return manifest

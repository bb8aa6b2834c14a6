from __future__ import annotations

import json
from pathlib import Path

import pytest

from dcode_workflow.errors import ManifestValidationError, UnknownGroupError, UnknownStepError
from dcode_workflow.manifest import load_manifest, parse_manifest, validate_manifest
from dcode_workflow.models import FALLBACK_OUTCOME, StepId, WorkflowManifest


def _valid_manifest() -> dict[str, object]:
    return {
        "Build": {
            "entryStep": "Implement",
            "staticContext": {"language": "python"},
            "steps": {
                "Implement": {
                    "executorRef": "coder",
                    "payloadAssemblyPlan": ["KEEP_LAST:10"],
                    "transitions": [
                        {"onOutcome": "SUCCESS", "action": "CALL:Verify"},
                        {"onOutcome": FALLBACK_OUTCOME, "action": "JUMP:Build__Implement"},
                    ],
                },
                "Finish": {
                    "executorRef": "coder",
                    "transitions": [{"onOutcome": FALLBACK_OUTCOME, "action": "RETURN"}],
                },
            },
        },
        "Verify": {
            "entryStep": "Verify__Test",
            "inheritsContext": False,
            "steps": {
                "Test": {
                    "executorRef": "pytest",
                    "transitions": [
                        {"onOutcome": "SUCCESS", "action": "RETURN"},
                        {"onOutcome": FALLBACK_OUTCOME, "action": "RETURN"},
                    ],
                }
            },
        },
    }


def _write(tmp_path: Path, data: object) -> Path:
    path = tmp_path / "workflows.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def test_manifest_accepts_camel_and_snake_case_and_groups_wrapper() -> None:
    camel = WorkflowManifest.model_validate(_valid_manifest())
    wrapped = WorkflowManifest.model_validate({"groups": _valid_manifest()})
    snake = WorkflowManifest.model_validate(
        {"Solo": {"entry_step": "Only", "inherits_context": False, "steps": {"Only": {"executor_ref": "x"}}}}
    )
    assert camel == wrapped
    assert snake.group("Solo").inherits_context is False
    assert camel.entry_step_id("Verify") == StepId("Verify", "Test")
    assert camel.entry_step_id("Build") == StepId("Build", "Implement")


def test_manifest_lookups_raise_structural_errors() -> None:
    manifest = WorkflowManifest.model_validate(_valid_manifest())
    assert manifest.next_step_id(StepId("Build", "Implement")) == StepId("Build", "Finish")
    assert manifest.next_step_id(StepId("Build", "Finish")) is None
    with pytest.raises(UnknownGroupError):
        manifest.group("Deploy")
    with pytest.raises(UnknownStepError):
        manifest.step(StepId("Build", "Deploy"))


def test_validate_manifest_clean_manifest_has_no_errors() -> None:
    report = validate_manifest(WorkflowManifest.model_validate(_valid_manifest()), executor_refs={"coder", "pytest"})
    assert report.errors == []


def test_validate_manifest_reports_cross_reference_errors() -> None:
    data = _valid_manifest()
    implement = data["Build"]["steps"]["Implement"]  # type: ignore[index]
    implement["transitions"] = [
        {"onOutcome": "SUCCESS", "action": "JUMP:Build__Missing"},
        {"onOutcome": "SUCCESS", "action": "CALL:Nowhere"},
        {"onOutcome": "RETRY", "action": "GOTO:Build__Finish"},
    ]
    implement["payloadAssemblyPlan"] = ["SUMMARIZE"]
    data["Build"]["steps"]["Finish"]["transitions"] = [{"onOutcome": "SUCCESS", "action": "CALL:Verify"}]  # type: ignore[index]

    report = validate_manifest(WorkflowManifest.model_validate(data), executor_refs={"coder"})
    messages = [f"{issue.path}.{issue.field}: {issue.message}" for issue in report.errors]

    assert any("JUMP target missing" in message for message in messages)
    assert any("'Nowhere' not found" in message for message in messages)
    assert any("GOTO" in message for message in messages)
    assert any("declared 2 times" in message for message in messages)
    assert any("payloadAssemblyPlan" in message for message in messages)
    assert any("no following step" in message for message in messages)
    assert any("Unknown executor 'pytest'" in message for message in messages)
    assert any(issue.path == "Build.steps.Finish" for issue in report.warnings)


def test_load_manifest_round_trip_and_errors(tmp_path: Path) -> None:
    manifest = load_manifest(_write(tmp_path, _valid_manifest()))
    assert set(manifest.groups) == {"Build", "Verify"}

    bad_entry = _valid_manifest()
    bad_entry["Build"]["entryStep"] = "Nope"  # type: ignore[index]
    with pytest.raises(ManifestValidationError) as excinfo:
        load_manifest(_write(tmp_path, bad_entry))
    assert excinfo.value.issues

    with pytest.raises(FileNotFoundError):
        load_manifest(tmp_path / "missing.json")


def test_parse_manifest_wraps_schema_errors() -> None:
    with pytest.raises(ManifestValidationError):
        parse_manifest("{not json")
    with pytest.raises(ManifestValidationError):
        parse_manifest(json.dumps({"Main": {"entryStep": "A", "steps": {}}}))
    with pytest.raises(ManifestValidationError):
        parse_manifest(json.dumps({"Bad__Name": {"entryStep": "A", "steps": {"A": {"executorRef": "x"}}}}))
    with pytest.raises(ManifestValidationError):
        parse_manifest(json.dumps({"Main": {"entryStep": "A", "steps": {"A": {"executorRef": "x", "extra": 1}}}}))


def test_validate_manifest_rejects_step_without_transitions() -> None:
    data = _valid_manifest()
    data["Build"]["steps"]["Finish"]["transitions"] = []  # type: ignore[index]
    report = validate_manifest(WorkflowManifest.model_validate(data))
    assert [(issue.path, issue.field) for issue in report.errors] == [("Build.steps.Finish", "transitions")]
    assert "RETURN" in report.errors[0].message


@pytest.mark.parametrize(
    "groups",
    [
        {"Main_": {"entryStep": "B", "steps": {"B": {"executorRef": "x"}}}},
        {"Main": {"entryStep": "B", "steps": {"_B": {"executorRef": "x"}}}},
    ],
)
def test_manifest_rejects_names_that_make_ambiguous_step_ids(groups: dict[str, object]) -> None:
    with pytest.raises(ManifestValidationError):
        parse_manifest(json.dumps(groups))

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from dcode_workflow.errors import UnknownExecutorError
from dcode_workflow.executors import (
    AgentExecutor,
    ChatExecutor,
    CommandExecutor,
    ExecutorRegistry,
    StepReply,
    build_registry,
    carry_forward,
    load_executor_configs,
    to_chat_messages,
)
from dcode_workflow.llm import StructuredOutputAdapter
from dcode_workflow.models import ContextEntry, ExecutorConfig, ExecutorKind, ExecutorProfile, ExecutorResult, WorkOrder
from dcode_workflow.settings import RuntimeSettings


def _order(tmp_path: Path, ref: str, context: list[ContextEntry] | None = None) -> WorkOrder:
    return WorkOrder(
        executor_ref=ref,
        context=context or [ContextEntry(id="i1", kind="STEP_INSTRUCTIONS", content="Run the tests.")],
        sandbox_path=str(tmp_path),
        step_id="Verify__Test",
        run_id="run-1",
    )


class _FakeRunnable:
    def __init__(self, reply: object) -> None:
        self.reply = reply
        self.prompts: list[object] = []

    def invoke(self, prompt: object) -> object:
        self.prompts.append(prompt)
        return self.reply

    async def ainvoke(self, prompt: object) -> object:
        self.prompts.append(prompt)
        return self.reply


class _EchoHandler:
    profile = ExecutorProfile(ref="echo", persona="Echo persona")

    async def __call__(self, work_order: WorkOrder) -> dict[str, object]:
        return {"new_payload": [entry.model_dump() for entry in work_order.context], "outcome": "SUCCESS"}


def test_registry_dispatches_by_exact_ref(tmp_path: Path) -> None:
    registry = ExecutorRegistry()
    registry.register("echo", _EchoHandler())

    result = asyncio.run(registry.execute(_order(tmp_path, "echo")))
    assert isinstance(result, ExecutorResult)
    assert result.outcome == "SUCCESS"
    assert registry.profiles() == {"echo": _EchoHandler.profile}
    assert "echo" in registry

    with pytest.raises(UnknownExecutorError):
        asyncio.run(registry.execute(_order(tmp_path, "Echo")))
    with pytest.raises(ValueError):
        registry.register("echo", _EchoHandler())


def test_command_executor_maps_exit_status_to_outcome(tmp_path: Path) -> None:
    passing = CommandExecutor(
        ExecutorConfig(ref="ok", kind=ExecutorKind.COMMAND, command=[sys.executable, "-c", "print('3 passed')"])
    )
    failing = CommandExecutor(
        ExecutorConfig(
            ref="bad",
            kind=ExecutorKind.COMMAND,
            command=[sys.executable, "-c", "import sys; sys.exit(2)"],
            failure_outcome="TESTS_FAILED",
        )
    )

    ok = asyncio.run(passing(_order(tmp_path, "ok")))
    assert ok.outcome == "SUCCESS"
    assert ok.new_payload[0].id == "i1"
    assert ok.new_payload[-1].kind == "TOOL_OUTPUT"
    assert "3 passed" in ok.new_payload[-1].content

    bad = asyncio.run(failing(_order(tmp_path, "bad")))
    assert bad.outcome == "TESTS_FAILED"
    assert "exit code 2" in bad.new_payload[-1].content


def test_command_executor_timeout_is_a_failure_outcome(tmp_path: Path) -> None:
    slow = CommandExecutor(
        ExecutorConfig(
            ref="slow",
            kind=ExecutorKind.COMMAND,
            command=[sys.executable, "-c", "import time; time.sleep(5)"],
            timeout_seconds=1,
        )
    )
    result = asyncio.run(slow(_order(tmp_path, "slow")))
    assert result.outcome == "FAILURE"
    assert "timed out" in result.new_payload[-1].content


def test_chat_executor_uses_structured_reply_and_declared_outcomes(tmp_path: Path) -> None:
    config = ExecutorConfig(ref="reviewer", kind=ExecutorKind.CHAT, persona="Strict reviewer", outcomes=["APPROVED", "CHANGES"])
    runnable = _FakeRunnable({"content": "Looks good.", "outcome": "APPROVED"})
    executor = ChatExecutor(config, model_name="gpt-4o-mini", adapter=StructuredOutputAdapter(schema=StepReply, runnable=runnable))
    context = [
        ContextEntry(id="p1", kind="EXECUTOR_PERSONA", content="Strict reviewer"),
        ContextEntry(id="i1", kind="STEP_INSTRUCTIONS", content="Review the diff."),
        ContextEntry(id="m1", kind="RUN_METADATA", content="{}"),
    ]

    result = asyncio.run(executor(_order(tmp_path, "reviewer", context)))
    assert result.outcome == "APPROVED"
    assert [entry.id for entry in result.new_payload[:-1]] == ["i1"]
    assert result.new_payload[-1].kind == "ASSISTANT"
    assert result.new_payload[-1].content == "Looks good."
    prompt = runnable.prompts[0]
    assert isinstance(prompt, list)
    assert "APPROVED, CHANGES" in prompt[0].content

    runnable.reply = {"content": "Hmm.", "outcome": "MAYBE"}
    assert asyncio.run(executor(_order(tmp_path, "reviewer", context))).outcome == "FAILURE"


def test_agent_executor_reads_outcome_from_final_json(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    async def fake_run_deep_agent(**kwargs: object) -> str:
        captured.update(kwargs)
        return 'Done.\n```json\n{"outcome": "IMPLEMENTED", "summary": "added api.py"}\n```'

    monkeypatch.setattr("dcode_workflow.executors.run_deep_agent", fake_run_deep_agent)
    config = ExecutorConfig(ref="coder", kind=ExecutorKind.AGENT, persona="Senior engineer", outcomes=["IMPLEMENTED"])
    executor = AgentExecutor(config, model_name="gpt-4o", settings=RuntimeSettings(), model_factory=lambda: object())  # type: ignore[arg-type,return-value]

    result = asyncio.run(executor(_order(tmp_path, "coder")))
    assert result.outcome == "IMPLEMENTED"
    assert result.new_payload[-1].content == "added api.py"
    assert captured["name"] == "coder"
    assert "Senior engineer" in str(captured["system_prompt"])
    assert captured["messages"] == [{"role": "user", "content": "[STEP_INSTRUCTIONS]\nRun the tests."}]

    async def no_json(**kwargs: object) -> str:
        return "I could not finish."

    monkeypatch.setattr("dcode_workflow.executors.run_deep_agent", no_json)
    assert asyncio.run(executor(_order(tmp_path, "coder"))).outcome == "FAILURE"


def test_model_reported_reserved_outcome_becomes_failure_outcome(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    chat_config = ExecutorConfig(ref="writer", kind=ExecutorKind.CHAT, failure_outcome="NEEDS_WORK")
    runnable = _FakeRunnable(StepReply(content="x", outcome="SIGNAL:FAIL_DEFAULT"))
    chat = ChatExecutor(chat_config, model_name="gpt-4o-mini", adapter=StructuredOutputAdapter(schema=StepReply, runnable=runnable))
    assert asyncio.run(chat(_order(tmp_path, "writer"))).outcome == "NEEDS_WORK"

    runnable.reply = StepReply(content="y", outcome="  ")
    assert asyncio.run(chat(_order(tmp_path, "writer"))).outcome == "NEEDS_WORK"

    runnable.reply = StepReply(content="z", outcome="DRAFTED")
    assert asyncio.run(chat(_order(tmp_path, "writer"))).outcome == "DRAFTED"

    async def reserved_verdict(**kwargs: object) -> str:
        return '{"outcome": "SIGNAL:FAIL_DEFAULT", "summary": "gave up"}'

    monkeypatch.setattr("dcode_workflow.executors.run_deep_agent", reserved_verdict)
    agent_config = ExecutorConfig(ref="coder", kind=ExecutorKind.AGENT)
    agent = AgentExecutor(agent_config, model_name="gpt-4o", settings=RuntimeSettings(), model_factory=lambda: object())  # type: ignore[arg-type,return-value]
    result = asyncio.run(agent(_order(tmp_path, "coder")))
    assert result.outcome == "FAILURE"
    assert result.new_payload[-1].content == "gave up"


def test_to_chat_messages_maps_kinds_to_roles() -> None:
    messages = to_chat_messages(
        [
            ContextEntry(id="p", kind="EXECUTOR_PERSONA", content="persona"),
            ContextEntry(id="a", kind="ASSISTANT", content="answer"),
            ContextEntry(id="t", kind="TOOL_OUTPUT", content="out"),
        ]
    )
    assert isinstance(messages[0], SystemMessage)
    assert isinstance(messages[1], AIMessage)
    assert isinstance(messages[2], HumanMessage)
    assert messages[2].content == "[TOOL_OUTPUT]\nout"
    assert carry_forward([ContextEntry(id="m", kind="RUN_METADATA", content="{}")]) == []


def test_load_executor_configs_and_build_registry(tmp_path: Path) -> None:
    path = tmp_path / "executors.json"
    path.write_text(
        json.dumps(
            {
                "coder": {"kind": "agent", "persona": "Engineer", "modelTier": "frontier"},
                "reviewer": {"kind": "chat", "outcomes": ["APPROVED", "CHANGES"]},
                "pytest": {"kind": "command", "command": ["pytest", "-q"], "failureOutcome": "TESTS_FAILED"},
            }
        ),
        encoding="utf-8",
    )
    configs = load_executor_configs(path)
    assert [cfg.ref for cfg in configs] == ["coder", "reviewer", "pytest"]

    settings = RuntimeSettings(model_frontier="gpt-4o", model_efficient="gpt-4o-mini")
    registry = build_registry(configs, settings)
    assert registry.refs() == ["coder", "pytest", "reviewer"]
    assert isinstance(registry.get("coder"), AgentExecutor)
    assert registry.profiles()["coder"].settings["model"] == "gpt-4o"
    assert registry.profiles()["reviewer"].settings["model"] == "gpt-4o-mini"
    assert registry.profiles()["pytest"].settings["command"] == ["pytest", "-q"]


def test_load_executor_configs_rejects_invalid_entries(tmp_path: Path) -> None:
    path = tmp_path / "executors.json"
    path.write_text(json.dumps([{"ref": "pytest", "kind": "command"}]), encoding="utf-8")
    with pytest.raises(ValueError):
        load_executor_configs(path)

    path.write_text(
        json.dumps({"executors": [{"ref": "x", "kind": "chat", "outcomes": ["SIGNAL:FAIL_DEFAULT"]}]}), encoding="utf-8"
    )
    with pytest.raises(ValueError):
        load_executor_configs(path)

    with pytest.raises(FileNotFoundError):
        load_executor_configs(tmp_path / "missing.json")

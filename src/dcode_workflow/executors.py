"""Executor service: string-keyed dispatch to explicitly registered handlers.

Handlers translate ordinary domain failures (a red test run, an agent that
could not finish) into outcome keywords. Only infrastructure failures, such as
a missing API key or an unreachable model endpoint, raise.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, Field, ValidationError

from .agent_runtime import extract_json_payload, run_deep_agent
from .backends import build_sandbox_backend
from .context import REGENERATED_KINDS
from .errors import UnknownExecutorError
from .llm import StructuredOutputAdapter, build_chat_model, build_structured_model
from .model_selection import RuntimeModelSelection, resolve_executor_models
from .models import (
    FALLBACK_OUTCOME,
    ContextEntry,
    ContextKind,
    ExecutorConfig,
    ExecutorKind,
    ExecutorProfile,
    ExecutorResult,
    WorkOrder,
)
from .settings import RuntimeSettings
from .state_store import read_json_text
from .tools import build_sandbox_command_tool, run_command

logger = logging.getLogger(__name__)

ASSISTANT_KIND = "ASSISTANT"
TOOL_OUTPUT_KIND = "TOOL_OUTPUT"

_SYSTEM_KINDS = frozenset({ContextKind.EXECUTOR_PERSONA})


class ExecutorHandler(Protocol):
    profile: ExecutorProfile

    async def __call__(self, work_order: WorkOrder) -> ExecutorResult:
        ...


class ExecutorService(Protocol):
    async def execute(self, work_order: WorkOrder) -> ExecutorResult:
        ...


class StepReply(BaseModel):
    """Structured reply a chat executor asks the model for."""

    content: str = Field(description="The work product or answer for this step.")
    outcome: str = Field(description="One outcome keyword describing how the step went.")


def carry_forward(context: list[ContextEntry]) -> list[ContextEntry]:
    return [entry for entry in context if entry.kind not in REGENERATED_KINDS]


def new_entry(kind: str, content: str) -> ContextEntry:
    return ContextEntry(id=f"{kind.lower()}-{uuid.uuid4().hex[:12]}", kind=kind, content=content)


def to_chat_messages(context: list[ContextEntry]) -> list[BaseMessage]:
    messages: list[BaseMessage] = []
    for entry in context:
        if entry.kind in _SYSTEM_KINDS:
            messages.append(SystemMessage(content=entry.content))
        elif entry.kind == ASSISTANT_KIND:
            messages.append(AIMessage(content=entry.content))
        else:
            messages.append(HumanMessage(content=f"[{entry.kind}]\n{entry.content}"))
    return messages


def _outcome_instruction(config: ExecutorConfig) -> str:
    if config.outcomes:
        return f"Report exactly one outcome keyword from: {', '.join(config.outcomes)}."
    return f"Report the outcome keyword {config.success_outcome} on success or {config.failure_outcome} otherwise."


def _resolve_outcome(config: ExecutorConfig, reported: str) -> str:
    """Map a model-reported outcome onto one this executor may emit.

    Blank, reserved and undeclared keywords become ``config.failure_outcome``.
    """
    outcome = reported.strip()
    if not outcome:
        return config.failure_outcome
    if outcome == FALLBACK_OUTCOME or (config.outcomes and outcome not in config.outcomes):
        logger.warning(
            "Executor %s reported outcome %r; using %s",
            config.ref,
            outcome,
            config.failure_outcome,
        )
        return config.failure_outcome
    return outcome


class ExecutorRegistry:
    """Registry of tagged executor handlers, resolved by exact executor ref."""

    def __init__(self) -> None:
        self._handlers: dict[str, ExecutorHandler] = {}

    def register(self, ref: str, handler: ExecutorHandler) -> None:
        if not ref.strip():
            raise ValueError("executor ref must be non-empty")
        if ref in self._handlers:
            raise ValueError(f"Executor already registered: {ref}")
        self._handlers[ref] = handler

    def __contains__(self, ref: object) -> bool:
        return ref in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def refs(self) -> list[str]:
        return sorted(self._handlers)

    def get(self, ref: str) -> ExecutorHandler:
        handler = self._handlers.get(ref)
        if handler is None:
            available = ", ".join(self.refs()) or "none"
            raise UnknownExecutorError(f'Executor "{ref}" is not registered. Available: {available}')
        return handler

    def profiles(self) -> dict[str, ExecutorProfile]:
        return {ref: handler.profile for ref, handler in sorted(self._handlers.items())}

    async def execute(self, work_order: WorkOrder) -> ExecutorResult:
        handler = self.get(work_order.executor_ref)
        logger.debug("Dispatching %s to executor %s", work_order.step_id, work_order.executor_ref)
        result = await handler(work_order)
        if not isinstance(result, ExecutorResult):
            try:
                result = ExecutorResult.model_validate(result)
            except ValidationError as exc:
                raise RuntimeError(f"Executor {work_order.executor_ref} returned an invalid result: {exc}") from exc
        return result


class ChatExecutor:
    """Single structured model call; the model reports its own outcome keyword."""

    def __init__(
        self,
        config: ExecutorConfig,
        *,
        model_name: str,
        adapter: StructuredOutputAdapter[StepReply] | None = None,
    ) -> None:
        self.config = config
        self.model_name = model_name
        self._adapter = adapter
        self.profile = ExecutorProfile(
            ref=config.ref,
            persona=config.persona,
            settings={"kind": config.kind.value, "model": model_name, "outcomes": list(config.outcomes)},
        )

    def _get_adapter(self) -> StructuredOutputAdapter[StepReply]:
        if self._adapter is None:
            self._adapter = build_structured_model(
                model_name=self.model_name,
                schema=StepReply,
                temperature=self.config.temperature,
                max_completion_tokens=self.config.max_completion_tokens,
            )
        return self._adapter

    async def __call__(self, work_order: WorkOrder) -> ExecutorResult:
        messages: list[BaseMessage] = [
            SystemMessage(
                content=(
                    "You are one step of a deterministic software-construction workflow. "
                    "Do the work the context asks for and return StepReply JSON only. "
                    + _outcome_instruction(self.config)
                )
            ),
            *to_chat_messages(work_order.context),
        ]
        reply = await self._get_adapter().ainvoke(messages)
        outcome = _resolve_outcome(self.config, reply.outcome)
        return ExecutorResult(
            new_payload=[*carry_forward(work_order.context), new_entry(ASSISTANT_KIND, reply.content)],
            outcome=outcome,
        )


class AgentExecutor:
    """Tool-using deep agent working directly in the sandbox."""

    def __init__(
        self,
        config: ExecutorConfig,
        *,
        model_name: str,
        settings: RuntimeSettings,
        model_factory: Callable[[], BaseChatModel] | None = None,
    ) -> None:
        self.config = config
        self.model_name = model_name
        self.settings = settings
        self._model_factory = model_factory
        self.profile = ExecutorProfile(
            ref=config.ref,
            persona=config.persona,
            settings={"kind": config.kind.value, "model": model_name, "outcomes": list(config.outcomes)},
        )

    def _model(self) -> BaseChatModel:
        if self._model_factory is not None:
            return self._model_factory()
        return build_chat_model(
            model_name=self.model_name,
            temperature=self.config.temperature,
            max_completion_tokens=self.config.max_completion_tokens,
        )

    async def __call__(self, work_order: WorkOrder) -> ExecutorResult:
        sandbox = Path(work_order.sandbox_path)
        backend = build_sandbox_backend(sandbox, protected_dir=self.settings.protected_sandbox_dir)
        tools = [
            build_sandbox_command_tool(
                sandbox,
                timeout_seconds=self.config.timeout_seconds or self.settings.command_timeout_seconds,
            )
        ]
        system_prompt = "\n".join(
            part
            for part in (
                self.config.persona.strip(),
                "You work inside the project sandbox using the file tools and run_sandbox_command.",
                'When done, reply with a single JSON object: {"outcome": "<KEYWORD>", "summary": "<what you did>"}.',
                _outcome_instruction(self.config),
            )
            if part
        )
        messages = [
            {"role": "assistant" if message.type == "ai" else "user", "content": str(message.content)}
            for message in to_chat_messages(work_order.context)
            if message.type != "system"
        ]
        text = await run_deep_agent(
            model=self._model(),
            backend=backend,
            tools=tools,
            system_prompt=system_prompt,
            messages=messages,
            name=self.config.ref,
            thread_id=f"{work_order.run_id or 'run'}-{work_order.step_id or self.config.ref}-{uuid.uuid4().hex[:8]}",
        )
        try:
            payload: dict[str, Any] = extract_json_payload(text)
        except RuntimeError as exc:
            logger.warning("Agent %s returned no JSON verdict: %s", self.config.ref, exc)
            payload = {"outcome": self.config.failure_outcome, "summary": text}
        outcome = _resolve_outcome(self.config, str(payload.get("outcome", "")))
        summary = str(payload.get("summary", "")).strip() or json.dumps(payload, sort_keys=True)
        return ExecutorResult(
            new_payload=[*carry_forward(work_order.context), new_entry(ASSISTANT_KIND, summary)],
            outcome=outcome,
        )


class CommandExecutor:
    """Local tool: runs a fixed command in the sandbox and maps its exit status to an outcome."""

    def __init__(self, config: ExecutorConfig, *, default_timeout_seconds: int = 600) -> None:
        self.config = config
        self.timeout_seconds = config.timeout_seconds or default_timeout_seconds
        self.profile = ExecutorProfile(
            ref=config.ref,
            persona=config.persona,
            settings={"kind": config.kind.value, "command": list(config.command)},
        )

    async def __call__(self, work_order: WorkOrder) -> ExecutorResult:
        result = await run_command(
            list(self.config.command),
            cwd=Path(work_order.sandbox_path),
            timeout_seconds=self.timeout_seconds,
        )
        outcome = self.config.success_outcome if result.succeeded else self.config.failure_outcome
        logger.info("Command executor %s finished with %s", self.config.ref, outcome)
        return ExecutorResult(
            new_payload=[*carry_forward(work_order.context), new_entry(TOOL_OUTPUT_KIND, result.render())],
            outcome=outcome,
        )


def load_executor_configs(path: Path) -> list[ExecutorConfig]:
    """Read executor configs from JSON: a list, ``{"executors": [...]}``, or a ref-keyed mapping.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the JSON is malformed or a config fails validation.
    """
    text = read_json_text(path, "executor config")
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"executor config at {path} is not valid JSON: {exc}") from exc

    if isinstance(raw, dict) and isinstance(raw.get("executors"), list):
        items = raw["executors"]
    elif isinstance(raw, dict):
        items = [{"ref": ref, **body} if isinstance(body, dict) else body for ref, body in raw.items()]
    elif isinstance(raw, list):
        items = raw
    else:
        raise ValueError(f"executor config at {path} must be a list or an object")

    configs: list[ExecutorConfig] = []
    for index, item in enumerate(items):
        try:
            configs.append(ExecutorConfig.model_validate(item))
        except ValidationError as exc:
            raise ValueError(f"executor config #{index} at {path} failed validation: {exc}") from exc
    return configs


def build_registry(
    configs: list[ExecutorConfig],
    settings: RuntimeSettings,
    *,
    model_selection: RuntimeModelSelection | None = None,
) -> ExecutorRegistry:
    """Instantiate one handler per config and register it under its ref."""
    selection = model_selection if model_selection is not None else RuntimeModelSelection.from_settings(settings)
    models = resolve_executor_models(configs, selection)
    registry = ExecutorRegistry()
    for cfg in configs:
        handler: ExecutorHandler
        if cfg.kind == ExecutorKind.CHAT:
            handler = ChatExecutor(cfg, model_name=models[cfg.ref])
        elif cfg.kind == ExecutorKind.AGENT:
            handler = AgentExecutor(cfg, model_name=models[cfg.ref], settings=settings)
        else:
            handler = CommandExecutor(cfg, default_timeout_seconds=settings.command_timeout_seconds)
        registry.register(cfg.ref, handler)
    logger.info("Registered %d executors: %s", len(registry), ", ".join(registry.refs()))
    return registry

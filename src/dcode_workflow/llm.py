from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ReplyT = TypeVar("ReplyT", bound=BaseModel)

REQUEST_TIMEOUT_SECONDS = 120
MAX_RETRIES = 3


class AsyncRunnable(Protocol):
    async def ainvoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ReplyT]):
    """Awaits a structured-output runnable and validates its reply against ``schema``."""

    schema: type[ReplyT]
    runnable: AsyncRunnable

    async def ainvoke(self, messages: Any) -> ReplyT:
        """Send ``messages`` to the model and return the validated reply.

        Raises:
            RuntimeError: If the model returns a reply that does not fit ``schema``.
        """
        return coerce_reply(await self.runnable.ainvoke(messages), self.schema)


def require_openai_api_key() -> str:
    """Return OPENAI_API_KEY, loading a ``.env`` from the working directory first.

    Raises:
        RuntimeError: If the key is not set.
    """
    load_dotenv()
    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for chat and agent executors")
    return key


def build_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    max_completion_tokens: int | None = None,
) -> ChatOpenAI:
    if not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    require_openai_api_key()
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": REQUEST_TIMEOUT_SECONDS,
        "max_retries": MAX_RETRIES,
    }
    if max_completion_tokens is not None:
        kwargs["max_completion_tokens"] = max_completion_tokens
    logger.debug("Building chat model %s (temperature=%s)", model_name, temperature)
    return ChatOpenAI(**kwargs)


def coerce_reply(raw: Any, schema: type[ReplyT]) -> ReplyT:
    if isinstance(raw, schema):
        return raw
    if isinstance(raw, BaseModel):
        raw = raw.model_dump(mode="json")
    if not isinstance(raw, dict):
        raise RuntimeError(f"Model reply for {schema.__name__} has unsupported type {type(raw).__name__}")
    try:
        return schema.model_validate(raw)
    except ValidationError as exc:
        raise RuntimeError(f"Model reply failed {schema.__name__} validation: {exc}") from exc


def build_structured_model(
    *,
    model_name: str,
    schema: type[ReplyT],
    temperature: float = 0.0,
    max_completion_tokens: int | None = None,
) -> StructuredOutputAdapter[ReplyT]:
    """Bind ``schema`` to a chat model through strict function calling."""
    model = build_chat_model(
        model_name=model_name,
        temperature=temperature,
        max_completion_tokens=max_completion_tokens,
    )
    runnable = model.with_structured_output(schema, method="function_calling", strict=True)
    return StructuredOutputAdapter(schema=schema, runnable=runnable)

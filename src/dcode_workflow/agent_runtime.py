from __future__ import annotations

import json
import logging
import re
from typing import Any

from deepagents import create_deep_agent
from deepagents.backends.protocol import BackendProtocol
from langchain_core.language_models import BaseChatModel
from langchain_core.tools import BaseTool

logger = logging.getLogger(__name__)


def _content_to_text(content: Any) -> str:
    """Recursively extract plain text from heterogeneous model response content."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
                continue
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    chunks.append(text_value)
                    continue
                nested = item.get("content")
                if nested is not None:
                    chunks.append(_content_to_text(nested))
                    continue
                chunks.append(json.dumps(item, sort_keys=True))
                continue
            chunks.append(str(item))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if isinstance(content, dict):
        if "content" in content:
            return _content_to_text(content["content"])
        return json.dumps(content, sort_keys=True)
    return str(content)


def extract_agent_text(response: Any) -> str:
    """Extract the final text of an agent response (last message, ``output`` or ``content``)."""
    if isinstance(response, str):
        return response
    if isinstance(response, dict):
        if "messages" in response and isinstance(response["messages"], list) and response["messages"]:
            return extract_agent_text(response["messages"][-1])
        if "output" in response:
            return extract_agent_text(response["output"])
        if "content" in response:
            return _content_to_text(response["content"])
    content = getattr(response, "content", None)
    if content is not None:
        return _content_to_text(content)
    return _content_to_text(response)


def extract_json_payload(text: str) -> dict[str, Any]:
    """Extract a JSON object from agent text output.

    Attempts parsing in order: direct JSON, fenced code block, first/last brace extraction.

    Raises:
        RuntimeError: If no valid JSON object can be extracted from the text.
    """
    body = text.strip()
    if not body:
        raise RuntimeError("Agent returned empty output; expected JSON object")

    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", body, flags=re.DOTALL)
    if fenced is not None:
        try:
            payload = json.loads(fenced.group(1))
        except json.JSONDecodeError as exc:
            raise RuntimeError(f"Failed to parse fenced JSON payload: {exc}") from exc
        if isinstance(payload, dict):
            return payload

    start = body.find("{")
    end = body.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            payload = json.loads(body[start : end + 1])
        except json.JSONDecodeError as exc:
            raise RuntimeError(f"Failed to parse extracted JSON payload: {exc}") from exc
        if isinstance(payload, dict):
            return payload

    preview = body[:220].replace("\n", " ")
    raise RuntimeError(f"Agent output did not contain a JSON object: {preview}")


async def run_deep_agent(
    *,
    model: BaseChatModel,
    backend: BackendProtocol,
    tools: list[BaseTool],
    system_prompt: str,
    messages: list[dict[str, str]],
    name: str,
    thread_id: str,
) -> str:
    """Run a tool-using deep agent over ``messages`` and return its final text.

    Args:
        model: Chat model driving the agent.
        backend: Filesystem backend the agent's built-in file tools operate on.
        tools: Extra LangChain tools.
        system_prompt: Agent system prompt.
        messages: Conversation as role/content dicts.
        name: Agent name, used in traces.
        thread_id: Checkpoint thread id for this invocation.
    """
    agent = create_deep_agent(
        model=model,
        tools=tools,
        backend=backend,
        system_prompt=system_prompt,
        name=name,
    )
    logger.debug("Invoking deep agent %s on thread %s with %d messages", name, thread_id, len(messages))
    response = await agent.ainvoke(
        {"messages": messages},
        config={"configurable": {"thread_id": thread_id}},
    )
    return extract_agent_text(response)

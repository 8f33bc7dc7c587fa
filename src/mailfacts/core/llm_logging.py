"""Recording of Claude API calls in the llm_request_log table.

Shared by the fact extractor and the query engine. Logging failures are
swallowed with a warning: they must never fail the call being logged.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from mailfacts.core.logging import get_logger

if TYPE_CHECKING:
    import anthropic

    from mailfacts.config_schema import LLMLoggingConfig
    from mailfacts.db.store import DatabaseStore

logger = get_logger(__name__)


def content_block_to_dict(block: Any) -> dict[str, Any]:
    """Convert an Anthropic content block to a serializable dict."""
    if block.type == "text":
        return {"type": "text", "text": block.text}
    if block.type == "tool_use":
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    return {"type": block.type}


async def log_llm_call(
    store: DatabaseStore,
    settings: LLMLoggingConfig,
    task_type: str,
    model: str,
    system: str,
    messages: list[dict[str, Any]],
    response: anthropic.types.Message | None,
    duration_ms: int,
    tool_call: dict[str, Any] | None = None,
    message_id: int | None = None,
    error: str | None = None,
) -> None:
    """Write one request/response pair to the LLM log, honoring the logging config."""
    if not settings.enabled:
        return

    try:
        prompt_data: dict[str, Any] | None = None
        if settings.log_prompts:
            prompt_data = {"system": system, "messages": messages}

        response_data: dict[str, Any] | None = None
        input_tokens: int | None = None
        output_tokens: int | None = None
        if response is not None:
            usage = getattr(response, "usage", None)
            if usage is not None:
                input_tokens = usage.input_tokens
                output_tokens = usage.output_tokens
            if settings.log_responses:
                response_data = {
                    "id": getattr(response, "id", None),
                    "model": getattr(response, "model", model),
                    "stop_reason": getattr(response, "stop_reason", None),
                    "content": [content_block_to_dict(block) for block in response.content],
                }

        await store.log_llm_request(
            task_type=task_type,
            model=model,
            prompt=prompt_data,
            response=response_data,
            tool_call=tool_call if settings.log_responses else None,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=duration_ms,
            message_id=message_id,
            error=error,
        )
    except Exception as e:
        logger.warning("llm_log_failed", task_type=task_type, message_id=message_id, error=str(e))

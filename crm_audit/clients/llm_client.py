"""Anthropic language model client with an optional tool-calling loop."""

import logging
from typing import Any, Awaitable, Callable

import anthropic
from pydantic import BaseModel

from ..config import get_settings
from ..errors import UpstreamError, UpstreamTimeoutError

logger = logging.getLogger(__name__)

ToolExecutor = Callable[[str, dict], Awaitable[str]]

TOOL_LIMIT_MESSAGE = "Tool call limit reached. Answer now with the information gathered so far."


class LLMResult(BaseModel):
    """Generated text plus token usage summed over every round."""

    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str | None = None
    tool_calls: int = 0


class LanguageModelClient:
    """Thin wrapper over the Anthropic Messages API."""

    SERVICE = "Anthropic"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        settings = get_settings()
        self.model = model or settings.llm_model
        self.max_tokens = settings.llm_max_tokens
        self.max_tool_rounds = settings.llm_max_tool_rounds
        self.timeout_seconds = settings.llm_timeout_seconds
        # Model calls are billed, so the SDK must never retry them on its own
        self.anthropic = client or anthropic.AsyncAnthropic(
            api_key=api_key or settings.anthropic_api_key,
            max_retries=0,
            timeout=self.timeout_seconds,
        )

    async def _create(self, **kwargs) -> Any:
        try:
            return await self.anthropic.messages.create(**kwargs)
        except anthropic.APITimeoutError as e:
            raise UpstreamTimeoutError(self.SERVICE, self.timeout_seconds) from e
        except anthropic.APIStatusError as e:
            raise UpstreamError(
                self.SERVICE,
                e.message,
                status_code=e.status_code,
                raw_body=e.response.text,
            ) from e
        except anthropic.APIError as e:
            raise UpstreamError(self.SERVICE, str(e)) from e

    async def generate(
        self,
        prompt: str,
        model: str | None = None,
        system: str | None = None,
        tools: list[dict] | None = None,
        tool_executor: ToolExecutor | None = None,
    ) -> LLMResult:
        """Generate a completion for a single user prompt.

        When ``tools`` and ``tool_executor`` are given, every ``tool_use`` block
        the model emits is executed and its result fed back, for at most
        ``llm_max_tool_rounds`` rounds. If the model still asks for tools after
        the last round, one more request is sent with ``tool_choice: none`` so
        the final answer is text.

        Args:
            prompt: The full user message
            model: Model override (defaults to ``llm_model``)
            system: Optional system prompt
            tools: Tool definitions in Anthropic's ``input_schema`` format
            tool_executor: ``async (name, input) -> str`` used to run tools

        Returns:
            LLMResult with the first text block of the final response

        Raises:
            UpstreamError: If the API fails or returns no text
        """
        model = model or self.model
        messages: list[dict] = [{"role": "user", "content": prompt}]
        input_tokens = 0
        output_tokens = 0
        tool_calls = 0
        rounds = 0
        final = False

        while True:
            kwargs: dict[str, Any] = {"model": model, "max_tokens": self.max_tokens, "messages": messages}
            if system:
                kwargs["system"] = system
            if tools:
                kwargs["tools"] = tools
            if final:
                kwargs["tool_choice"] = {"type": "none"}

            response = await self._create(**kwargs)
            input_tokens += response.usage.input_tokens
            output_tokens += response.usage.output_tokens

            tool_uses = [block for block in response.content if block.type == "tool_use"]
            if final or response.stop_reason != "tool_use" or not tool_uses or tool_executor is None:
                break

            messages.append({"role": "assistant", "content": response.content})
            if rounds >= self.max_tool_rounds:
                # Out of rounds: decline the pending calls and ask for a text answer
                logger.warning("Tool round limit (%d) reached, requesting a final answer", self.max_tool_rounds)
                final = True
                messages.append({"role": "user", "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": block.id,
                        "content": TOOL_LIMIT_MESSAGE,
                        "is_error": True,
                    }
                    for block in tool_uses
                ]})
                continue

            rounds += 1
            results = []
            for block in tool_uses:
                tool_calls += 1
                try:
                    output = await tool_executor(block.name, dict(block.input or {}))
                    results.append({"type": "tool_result", "tool_use_id": block.id, "content": output})
                except Exception as e:
                    # The model sees the failure and can carry on without the tool
                    logger.warning("Tool %s failed: %s", block.name, e)
                    results.append(
                        {
                            "type": "tool_result",
                            "tool_use_id": block.id,
                            "content": f"Error: {e}",
                            "is_error": True,
                        }
                    )
            messages.append({"role": "user", "content": results})

        text = next((block.text for block in response.content if block.type == "text"), "")
        if not text.strip():
            raise UpstreamError(self.SERVICE, f"model returned no text (stop_reason={response.stop_reason})")

        return LLMResult(
            text=text,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            stop_reason=response.stop_reason,
            tool_calls=tool_calls,
        )

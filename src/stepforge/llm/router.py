"""Model routing for agent steps: litellm completions with fallback chains and cost tracking."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

import litellm
from litellm import acompletion

from stepforge.llm.provider import LLMError, LLMResponse

litellm.suppress_debug_info = True

_log = logging.getLogger(__name__)

MAX_RATE_LIMIT_RETRIES = 3


@dataclass
class CallRecord:
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    latency_ms: float = 0.0
    success: bool = True
    error: str | None = None


def _is_rate_limit(error: Exception) -> bool:
    text = str(error).lower()
    return isinstance(error, litellm.RateLimitError) or "rate" in text or "429" in text


def _parse_tool_calls(raw_calls: list) -> list[dict]:
    parsed = []
    for call in raw_calls or []:
        arguments = call.function.arguments
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments)
            except ValueError:
                arguments = {}
        parsed.append({"id": call.id, "function": {"name": call.function.name, "arguments": arguments or {}}})
    return parsed


class LLMRouter:

    def __init__(self, default_model: str = "openai/gpt-4o-mini", cost_tracking: bool = True):
        self.default_model = default_model
        self.cost_tracking = cost_tracking
        self.total_tokens = {"input": 0, "output": 0}
        self.total_cost = 0.0
        self.call_log: list[CallRecord] = []

    async def complete(
        self,
        messages: list[dict],
        model: str | None = None,
        fallback: list[str] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        **extra: Any,
    ) -> LLMResponse:
        """Try ``model`` then each fallback in turn; rate limits back off and retry the same model."""
        chain = [model or self.default_model, *(fallback or [])]
        errors: list[str] = []

        for current in chain:
            for attempt in range(MAX_RATE_LIMIT_RETRIES):
                started = time.time()
                try:
                    response = await acompletion(
                        model=current,
                        messages=messages,
                        temperature=temperature,
                        max_tokens=max_tokens,
                        **extra,
                    )
                except Exception as e:
                    message = f"{current} (attempt {attempt + 1}): {type(e).__name__}: {e}"
                    errors.append(message)
                    self.call_log.append(
                        CallRecord(model=current, latency_ms=(time.time() - started) * 1000,
                                   success=False, error=message)
                    )
                    if _is_rate_limit(e) and attempt < MAX_RATE_LIMIT_RETRIES - 1:
                        wait = 2**attempt
                        _log.warning("Rate limited on %s, retrying in %ss", current, wait)
                        await asyncio.sleep(wait)
                        continue
                    _log.warning("Model %s failed: %s", current, e)
                    break
                return self._record(response, current, (time.time() - started) * 1000)

        raise LLMError(
            f"All models failed. Tried: {chain}. Errors: {errors}",
            models_tried=chain,
            errors=errors,
        )

    def _record(self, response: Any, model: str, latency_ms: float) -> LLMResponse:
        message = response.choices[0].message
        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "prompt_tokens", 0) or 0
        output_tokens = getattr(usage, "completion_tokens", 0) or 0

        cost = 0.0
        if self.cost_tracking:
            try:
                cost = litellm.completion_cost(completion_response=response)
            except Exception:
                _log.debug("No pricing known for %s", model)

        self.total_tokens["input"] += input_tokens
        self.total_tokens["output"] += output_tokens
        self.total_cost += cost
        self.call_log.append(
            CallRecord(model=model, input_tokens=input_tokens, output_tokens=output_tokens,
                       cost=cost, latency_ms=latency_ms)
        )
        return LLMResponse(
            content=message.content,
            tool_calls=_parse_tool_calls(getattr(message, "tool_calls", None)),
            model_used=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            latency_ms=latency_ms,
        )

    def get_cost_summary(self) -> dict:
        by_model: dict[str, dict] = {}
        for record in self.call_log:
            entry = by_model.setdefault(
                record.model, {"cost": 0.0, "tokens": {"input": 0, "output": 0}, "calls": 0}
            )
            entry["cost"] += record.cost
            entry["tokens"]["input"] += record.input_tokens
            entry["tokens"]["output"] += record.output_tokens
            entry["calls"] += 1

        return {
            "total_cost": self.total_cost,
            "total_tokens": dict(self.total_tokens),
            "by_model": by_model,
            "call_count": len(self.call_log),
        }

"""
ProductMiner Graph Callbacks

LangChain callback handler for LLM timing and token usage, and a context
manager for timing pipeline steps. Both write to the step_timings table.
"""

import time
from typing import Any, Callable, Dict, List, Optional

from langchain_core.callbacks import BaseCallbackHandler
from langchain_core.messages import BaseMessage
from langchain_core.outputs import LLMResult

from .database import log_step_timing


def _message_text(content) -> str:
    if isinstance(content, str):
        return content
    text = ""
    if isinstance(content, list):
        for part in content:
            if isinstance(part, str):
                text += part
            elif isinstance(part, dict) and "text" in part:
                text += str(part["text"])
    return text


class TimingTokenCallback(BaseCallbackHandler):
    """
    Tracks duration and token usage of every LLM call it sees.

    Usage:
        callback = TimingTokenCallback(run_id="...", url=url)
        llm.invoke(messages, config={"callbacks": [callback]})
        callback.get_totals()
    """

    def __init__(self, run_id: str = None, step_name: str = "extract_llm", url: str = None):
        super().__init__()
        self.run_id = run_id
        self.step_name = step_name
        self.url = url
        self.start_time: Optional[float] = None
        self.last_prompt_text = ""
        self.reset()

    def on_llm_start(self, serialized: Dict[str, Any], prompts: List[str], **kwargs: Any) -> None:
        self.start_time = time.time()
        self.last_prompt_text = "".join(prompts)

    def on_chat_model_start(
        self,
        serialized: Dict[str, Any],
        messages: List[List[BaseMessage]],
        **kwargs: Any,
    ) -> None:
        self.start_time = time.time()
        self.last_prompt_text = "".join(
            _message_text(msg.content) for batch in messages for msg in batch
        )

    def on_llm_end(self, response: LLMResult, **kwargs: Any) -> None:
        """Extracts token usage; estimates at ~4 chars per token when absent."""
        duration = time.time() - self.start_time if self.start_time else 0.0
        self.total_duration += duration
        self.total_calls += 1

        prompt_tokens, completion_tokens = self._usage_from(response)
        if prompt_tokens == 0 and self.last_prompt_text:
            prompt_tokens = len(self.last_prompt_text) // 4
        if completion_tokens == 0:
            completion_text = "".join(
                generation.text for batch in response.generations for generation in batch
            )
            completion_tokens = len(completion_text) // 4

        self.total_prompt_tokens += prompt_tokens
        self.total_completion_tokens += completion_tokens

        if self.run_id:
            log_step_timing(
                run_id=self.run_id,
                step_name=self.step_name,
                duration_seconds=duration,
                url=self.url,
                details={
                    "prompt_tokens": prompt_tokens,
                    "completion_tokens": completion_tokens,
                },
            )

    def on_llm_error(self, error: BaseException, **kwargs: Any) -> None:
        duration = time.time() - self.start_time if self.start_time else 0.0
        if self.run_id:
            log_step_timing(
                run_id=self.run_id,
                step_name=f"{self.step_name}_error",
                duration_seconds=duration,
                url=self.url,
                details={"error": str(error)},
            )

    @staticmethod
    def _usage_from(response: LLMResult) -> tuple:
        prompt_tokens = 0
        completion_tokens = 0

        if response.llm_output:
            usage = response.llm_output.get("usage", {})
            if isinstance(usage, dict):
                prompt_tokens = usage.get("prompt_tokens", 0) or usage.get("input_tokens", 0)
                completion_tokens = usage.get("completion_tokens", 0) or usage.get("output_tokens", 0)

        for batch in response.generations:
            for generation in batch:
                # Chat generations carry usage on the message
                message = getattr(generation, "message", None)
                usage = getattr(message, "usage_metadata", None) if message is not None else None
                if usage:
                    prompt_tokens = max(prompt_tokens, usage.get("input_tokens", 0) or 0)
                    completion_tokens = max(completion_tokens, usage.get("output_tokens", 0) or 0)
                info = generation.generation_info or {}
                usage = info.get("usage_metadata") or {}
                if usage:
                    prompt_tokens = max(prompt_tokens, usage.get("prompt_token_count", 0) or 0)
                    completion_tokens = max(completion_tokens, usage.get("candidates_token_count", 0) or 0)

        return prompt_tokens, completion_tokens

    def get_totals(self) -> dict:
        return {
            "prompt_tokens": self.total_prompt_tokens,
            "completion_tokens": self.total_completion_tokens,
            "total_tokens": self.total_prompt_tokens + self.total_completion_tokens,
            "total_calls": self.total_calls,
            "total_duration_seconds": self.total_duration,
        }

    def reset(self) -> None:
        self.total_prompt_tokens = 0
        self.total_completion_tokens = 0
        self.total_calls = 0
        self.total_duration = 0.0


class StepTimingWrapper:
    """
    Context manager for timing one pipeline step of one URL.

    Usage:
        with StepTimingWrapper("fetch", run_id, url) as timer:
            ...
            timer.set_details({"source": "proxy"})
    """

    def __init__(
        self,
        step_name: str,
        run_id: str = None,
        url: str = None,
        on_done: Optional[Callable[[str, float], None]] = None,
    ):
        self.step_name = step_name
        self.run_id = run_id
        self.url = url
        self.on_done = on_done
        self.start_time: Optional[float] = None
        self.duration: Optional[float] = None
        self.details: dict = {}

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.time() - self.start_time
        if exc_type:
            self.details["error"] = str(exc_val)

        if self.run_id:
            log_step_timing(
                run_id=self.run_id,
                step_name=self.step_name,
                duration_seconds=self.duration,
                url=self.url,
                details=self.details or None,
            )

        if self.on_done and not exc_type:
            self.on_done(self.step_name, self.duration)

        return False

    def set_details(self, details: dict) -> None:
        self.details.update(details)

import asyncio
import logging
import random
import threading
import time
import traceback
from typing import Any, Callable, Dict, List, TypeVar

import openai
from openai import OpenAI
from langchain_google_vertexai import ChatVertexAI
from langchain_core.messages import HumanMessage, SystemMessage

from classes.relay_errors import ProviderError, ProviderTimeout

T = TypeVar("T")

logger = logging.getLogger("devblox_relay")


# Global backoff state (shared across all clients)
_global_backoff_lock = threading.Lock()
_global_wait_until = 0.0
_global_backoff_seconds = 30.0
_GLOBAL_BACKOFF_MAX = 600.0


def _is_timeout_error(e: Exception) -> bool:
    if isinstance(e, (asyncio.TimeoutError, TimeoutError, openai.APITimeoutError)):
        return True
    msg = repr(e)
    return "TimeoutError" in msg or "timed out" in msg.lower()


def _is_resource_exhausted_error(e: Exception) -> bool:
    if isinstance(e, openai.RateLimitError):
        return True
    msg = str(e)
    return (
        "429" in msg
        and (
            "RESOURCE_EXHAUSTED" in msg
            or "Resource has been exhausted" in msg
            or "Too Many Requests" in msg
        )
    )


def call_with_retries_sync(
    fn: Callable[[], T],
    *,
    retries: int = 1,
    max_backoff_wait: float = 5.0,
    log: Callable[[str], None] | None = None,
) -> T:
    """
    Run a sync LLM call honouring the process-wide 429/timeout backoff window.

    The wait for an open backoff window is capped at max_backoff_wait so a
    web request is never parked behind a long provider cool-down. The last
    failure is re-raised as ProviderTimeout or ProviderError.
    """
    last_exception: Exception | None = None

    def _respect_global_backoff() -> None:
        deadline = time.monotonic() + max_backoff_wait
        while True:
            with _global_backoff_lock:
                now = time.monotonic()
                wait = min(_global_wait_until, deadline) - now
            if wait <= 0:
                return
            time.sleep(min(wait, 1.0))

    def _register_429_and_get_delay() -> float:
        global _global_wait_until, _global_backoff_seconds

        with _global_backoff_lock:
            now = time.monotonic()
            base = _global_backoff_seconds
            delay = random.uniform(base * 0.95, base * 1.35)
            _global_backoff_seconds = min(_global_backoff_seconds * 2, _GLOBAL_BACKOFF_MAX)
            _global_wait_until = max(_global_wait_until, now + delay)
            return delay

    def _reset_backoff_on_success() -> None:
        global _global_backoff_seconds
        with _global_backoff_lock:
            _global_backoff_seconds = max(1.0, _global_backoff_seconds * 0.5)

    for attempt in range(max(1, retries)):
        _respect_global_backoff()
        start_time = time.time()
        try:
            result = fn()
            _reset_backoff_on_success()
            return result
        except Exception as e:
            elapsed = time.time() - start_time
            last_exception = e

            if _is_resource_exhausted_error(e) or _is_timeout_error(e):
                delay = _register_429_and_get_delay()
                msg = f"Attempt {attempt+1} got 429/timeout, backing off ~{delay:.1f}s."
            else:
                msg = f"Attempt {attempt+1} failed."

            if log:
                log(f"{msg} (elapsed={elapsed:.2f}s): {e}\n{traceback.format_exc()}")

    if last_exception is not None and _is_timeout_error(last_exception):
        raise ProviderTimeout(f"AI provider timed out: {last_exception}") from last_exception
    raise ProviderError(f"AI provider call failed: {last_exception}") from last_exception


def is_openai_model(model_name) -> bool:
    prefixes = ("gpt-", "gpt4", "o1", "o3", "o4")
    return any((model_name or "").startswith(p) for p in prefixes)


class ChatLlmClient:
    """
    Minimal wrapper for the relay's AI text generator:

        text = client.generate("make a door", LUA_SYSTEM_PROMPT)

    Under the hood:
    - OpenAI: Responses API with input=[{role, content}, ...]
    - Vertex: ChatVertexAI.invoke(messages)
    One attempt per call unless retries says otherwise.

    The provider client is built on the first generate(), so missing
    credentials surface as a ProviderError on /ai and nowhere else.
    """

    def __init__(
        self,
        model_name: str,
        *,
        vertex_project: str | None = None,
        vertex_region: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
        retries: int = 1,
        openai_client: Any = None,
        vertex_client: Any = None,
    ):
        self.provider = "openai" if is_openai_model(model_name) else "vertex"
        self.model_name = model_name
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.retries = retries
        self._timeout = timeout
        self._vertex_project = vertex_project
        self._vertex_region = vertex_region
        self._client = openai_client
        self._vertex = vertex_client
        self._build_lock = threading.Lock()

    def _get_openai(self):
        with self._build_lock:
            if self._client is None:
                client_kwargs: Dict[str, Any] = {"max_retries": 0}
                if self._timeout is not None:
                    client_kwargs["timeout"] = self._timeout
                self._client = OpenAI(**client_kwargs)
            return self._client

    def _get_vertex(self):
        with self._build_lock:
            if self._vertex is None:
                self._vertex = ChatVertexAI(
                    project=self._vertex_project,
                    location=self._vertex_region,
                    model_name=self.model_name,
                    temperature=self.temperature,
                    max_output_tokens=self.max_tokens,
                    timeout=self._timeout,
                )
            return self._vertex

    def _to_openai_messages(self, messages: List[SystemMessage | HumanMessage]) -> List[Dict[str, str]]:
        return [
            {"role": "system" if isinstance(m, SystemMessage) else "user", "content": str(m.content)}
            for m in messages
        ]

    def _invoke_once(self, messages: List[SystemMessage | HumanMessage]) -> str:
        """
        Single HTTP call without retries/backoff.
        """
        if self.provider == "vertex":
            resp = self._get_vertex().invoke(messages)
            usage_md = getattr(resp, "usage_metadata", None)
            if usage_md:
                logger.info("LLM usage model=%s %s", self.model_name, dict(usage_md))
            if isinstance(resp, str):
                return resp.strip()
            return str(getattr(resp, "content", resp) or "").strip()

        params: Dict[str, Any] = {}
        if self.temperature is not None:
            params["temperature"] = self.temperature
        if self.max_tokens is not None:
            params["max_output_tokens"] = self.max_tokens

        resp = self._get_openai().responses.create(
            model=self.model_name,
            input=self._to_openai_messages(messages),
            **params,
        )
        usage = getattr(resp, "usage", None)
        if usage is not None:
            logger.info(
                "LLM usage model=%s input_tokens=%s output_tokens=%s total_tokens=%s",
                self.model_name,
                getattr(usage, "input_tokens", 0) or 0,
                getattr(usage, "output_tokens", 0) or 0,
                getattr(usage, "total_tokens", 0) or 0,
            )

        text = getattr(resp, "output_text", "") or ""
        return text.strip()

    def generate(self, prompt_text: str, system_instructions: str) -> str:
        messages = [
            SystemMessage(content=system_instructions),
            HumanMessage(content=prompt_text),
        ]
        return call_with_retries_sync(
            lambda: self._invoke_once(messages),
            retries=self.retries,
            log=lambda msg: logger.warning("[LLM-RETRY] %s", msg),
        )

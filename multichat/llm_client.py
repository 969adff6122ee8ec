import asyncio
import logging
import threading
import random
import time
import traceback
from decimal import Decimal
from typing import Callable, TypeVar, Any, Dict, List, Optional

from openai import OpenAI
from langchain_google_vertexai import VertexAI, ChatVertexAI
from langchain_core.messages import BaseMessage, AIMessage, SystemMessage

from multichat.model_props import parse_model_name, is_openai_model, estimate_credit_cost

T = TypeVar("T")

logger = logging.getLogger("multichat_backend")


class MaxRetryErrorsException(Exception):
    pass


# Global backoff state (shared across all clients)
_global_backoff_lock = threading.Lock()
_global_wait_until = 0.0
_global_backoff_seconds = 30.0
_GLOBAL_BACKOFF_MAX = 600.0


def call_with_retries_sync(
    fn: Callable[[], T],
    *,
    retries: int = 3,
    log: Callable[[str], None] | None = None,
) -> T:
    """
    Run a sync LLM call with global 429/timeout backoff + retries.
    """
    last_exception: Exception | None = None

    def _is_timeout_error(e: Exception) -> bool:
        if isinstance(e, (asyncio.TimeoutError, TimeoutError)):
            return True
        msg = repr(e)
        return "TimeoutError" in msg or "timed out" in msg.lower()

    def _is_resource_exhausted_error(e: Exception) -> bool:
        msg = str(e)
        return (
            "429" in msg
            and (
                "RESOURCE_EXHAUSTED" in msg
                or "Resource has been exhausted" in msg
                or "Too Many Requests" in msg
            )
        )

    def _respect_global_backoff() -> None:
        while True:
            with _global_backoff_lock:
                now = time.monotonic()
                wait = _global_wait_until - now
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

    for attempt in range(retries):
        _respect_global_backoff()
        start_time = time.time()
        try:
            result = fn()
            _reset_backoff_on_success()
            return result
        except Exception as e:
            elapsed = time.time() - start_time
            last_exception = e

            # only provider throttling moves the shared clock; a plain timeout is retried as-is
            if _is_resource_exhausted_error(e):
                delay = _register_429_and_get_delay()
                msg = f"Attempt {attempt+1} got 429, backing off ~{delay:.1f}s."
            elif _is_timeout_error(e):
                msg = f"Attempt {attempt+1} timed out."
            else:
                msg = f"Attempt {attempt+1} failed."

            if log:
                log(f"{msg} (elapsed={elapsed:.2f}s): {e}\n{traceback.format_exc()}")

    raise MaxRetryErrorsException(f"All {retries} retry attempts failed.") from last_exception


class BaseLlmClient:
    """
    Provider selection plus usage accounting shared by the completion and chat clients.
    One instance per job: the accrued cost is what the job's requester pays.
    """

    vertex_cls: Any = None
    retry_tag = "LLM-RETRY"

    def __init__(
        self,
        model_name: str,
        *,
        vertex_project: str,
        vertex_region: str,
        timeout: float | None = None,
        is_nsfw: bool = False,
    ):
        self.provider = "openai" if is_openai_model(model_name) else "vertex"
        self._raw_model_name = model_name
        self.model_name = model_name
        self.is_nsfw = is_nsfw
        self._timeout = timeout
        self.last_usage: Optional[Dict[str, Any]] = None
        self._openai_params: Dict[str, Any] = {}
        self._vertex = None
        self._client = None

        if self.provider == "vertex":
            self._vertex = self.vertex_cls(
                project=vertex_project,
                location=vertex_region,
                model_name=model_name,
                timeout=timeout,
            )
        else:
            # 'gpt-5.1_fast-flex' -> base model + Responses API params
            self.model_name, self._openai_params = parse_model_name(model_name)
            client_kwargs: Dict[str, Any] = {"max_retries": 0}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            self._client = OpenAI(**client_kwargs)

    def _add_usage(self, prompt_tokens: int, completion_tokens: int, total_tokens: int, cached_tokens: int) -> None:
        inc: Dict[str, Any] = {
            "prompt_token_count": prompt_tokens,
            "candidates_token_count": completion_tokens,
            "total_token_count": total_tokens or (prompt_tokens + completion_tokens),
            "cached_content_token_count": cached_tokens,
            "accrued_cost": estimate_credit_cost(
                self._raw_model_name,
                prompt_tokens,
                completion_tokens,
                is_nsfw=self.is_nsfw,
            ),
        }
        if self.last_usage is None:
            self.last_usage = inc
            return
        for k, v in inc.items():
            self.last_usage[k] = (self.last_usage.get(k, 0) or 0) + (v or 0)

    def _merge_openai_usage(self, resp: Any) -> None:
        usage = getattr(resp, "usage", None) if resp is not None else None
        if usage is None:
            return
        details = getattr(usage, "input_tokens_details", None)
        self._add_usage(
            int(getattr(usage, "input_tokens", 0) or 0),
            int(getattr(usage, "output_tokens", 0) or 0),
            int(getattr(usage, "total_tokens", 0) or 0),
            int(getattr(details, "cached_tokens", 0) or 0) if details else 0,
        )

    def _merge_vertex_usage(self, resp: Any) -> None:
        usage_md = getattr(resp, "usage_metadata", None)
        if usage_md is None:
            rm = getattr(resp, "response_metadata", None)
            usage_md = rm.get("usage_metadata") if isinstance(rm, dict) else getattr(rm, "usage_metadata", None)
        if not usage_md:
            return

        def get(*keys: str) -> int:
            for k in keys:
                v = usage_md.get(k) if isinstance(usage_md, dict) else getattr(usage_md, k, None)
                if v:
                    return int(v)
            return 0

        # raw Vertex names first, then LangChain's normalized UsageMetadata
        self._add_usage(
            get("prompt_token_count", "input_tokens"),
            get("candidates_token_count", "output_tokens"),
            get("total_token_count", "total_tokens"),
            get("cached_content_token_count"),
        )

    def _openai_input(self, payload: Any) -> Any:
        return payload

    def _invoke_once(self, payload: Any) -> str:
        """Single provider call, no retries."""
        if self.provider == "vertex":
            resp = self._vertex.invoke(payload)
            self._merge_vertex_usage(resp)
            if isinstance(resp, str):
                return resp
            return getattr(resp, "content", str(resp))

        resp = self._client.responses.create(
            model=self.model_name,
            input=self._openai_input(payload),
            **self._openai_params,
        )
        self._merge_openai_usage(resp)
        return (getattr(resp, "output_text", "") or "").strip()

    def invoke(self, payload: Any, *, retries: int = 3) -> str:
        return call_with_retries_sync(
            lambda: self._invoke_once(payload),
            retries=retries,
            log=lambda msg: logger.warning(f"[{self.retry_tag}] {msg}"),
        )

    def get_accrued_cost(self) -> Decimal:
        if not self.last_usage:
            return Decimal("0")
        return Decimal(self.last_usage.get("accrued_cost", 0))

    def get_accrued_usage(self) -> Dict[str, Any]:
        return dict(self.last_usage or {})


class LlmClient(BaseLlmClient):
    """
    Completion-style client used for memory summaries:

        text = llm.invoke("some prompt")
    """

    vertex_cls = VertexAI


class ChatLlmClient(BaseLlmClient):
    """
    Chat-style client used for character replies:

        text = chat_llm.invoke([SystemMessage(...), HumanMessage(...), AIMessage(...), ...])

    On OpenAI the messages go to the Responses API as [{role, content}, ...].
    """

    vertex_cls = ChatVertexAI
    retry_tag = "CHAT-LLM-RETRY"

    def _openai_input(self, messages: List[BaseMessage]) -> List[Dict[str, str]]:
        out: List[Dict[str, str]] = []
        for m in messages:
            if isinstance(m, SystemMessage):
                role = "developer"
            elif isinstance(m, AIMessage):
                role = "assistant"
            else:
                role = "user"
            out.append({"role": role, "content": str(m.content)})
        return out


def build_chat_llm(settings, model_name: str | None = None, *, is_nsfw: bool = False) -> ChatLlmClient:
    return ChatLlmClient(
        model_name or settings.chat_model,
        vertex_project=settings.google_project,
        vertex_region=settings.google_region,
        timeout=settings.response_timeout_seconds,
        is_nsfw=is_nsfw,
    )


def build_summary_llm(settings) -> LlmClient:
    return LlmClient(
        settings.summary_model,
        vertex_project=settings.google_project,
        vertex_region=settings.google_region,
        timeout=settings.response_timeout_seconds,
    )

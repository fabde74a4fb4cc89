from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from ..errors import UpstreamCollaboratorFailure


logger = logging.getLogger(__name__)

TransientHttpError = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)


class LLMError(UpstreamCollaboratorFailure):
    pass


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str


class OllamaChatClient:
    def __init__(self, *, base_url: str, model: str, timeout_s: float = 120.0, options: dict[str, Any] | None = None):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_s = float(timeout_s)
        self.options = dict(options or {})

    def chat(self, messages: list[ChatMessage], *, json_mode: bool = False) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "stream": False,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        }
        if json_mode:
            payload["format"] = "json"
        if self.options:
            payload["options"] = self.options

        try:
            r = self._post(f"{self.base_url}/api/chat", payload)
        except httpx.HTTPError as e:
            raise LLMError(
                f"Failed to connect to Ollama at {self.base_url}. Is it running? ({e})"
            ) from e

        if r.status_code != 200:
            raise LLMError(f"Ollama error {r.status_code}: {r.text}")

        try:
            data = r.json()
        except ValueError as e:
            raise LLMError(f"Ollama returned a non-JSON reply: {r.text[:200]!r}") from e
        msg = (data.get("message") if isinstance(data, dict) else None) or {}
        content = msg.get("content") if isinstance(msg, dict) else None
        if not isinstance(content, str):
            raise LLMError(f"Unexpected Ollama response: {data}")
        return content

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_random_exponential(multiplier=0.5, max=5.0),
        retry=retry_if_exception_type(TransientHttpError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )
    def _post(self, url: str, payload: dict[str, Any]) -> httpx.Response:
        with httpx.Client(timeout=self.timeout_s) as client:
            return client.post(url, json=payload)


_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


def parse_json_reply(content: str, *, expect: type = dict) -> Any:
    """Pull the first JSON object/array out of a chat reply.

    Models often wrap JSON in prose or code fences; only the outermost
    bracketed span is parsed. Raises `LLMError` when nothing usable is found.
    """
    text = (content or "").strip()
    try:
        value = json.loads(text)
    except ValueError:
        m = (_OBJECT_RE if expect is dict else _ARRAY_RE).search(text)
        if m is None:
            raise LLMError(f"No JSON {expect.__name__} in model reply: {text[:200]!r}") from None
        try:
            value = json.loads(m.group(0))
        except ValueError as e:
            raise LLMError(f"Malformed JSON in model reply: {e}") from e

    # json_mode replies wrap arrays in an object, e.g. {"insights": [...]}.
    if expect is list and isinstance(value, dict):
        lists = [v for v in value.values() if isinstance(v, list)]
        if len(lists) == 1:
            value = lists[0]
    if not isinstance(value, expect):
        raise LLMError(f"Expected JSON {expect.__name__}, got {type(value).__name__}")
    return value

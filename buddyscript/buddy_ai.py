"""
AI builtins (``ai.ask``, ``ai.chat``, ``ai.complete``, ``grok``) and the
default chat agent, an OpenAI-compatible chat-completions client on httpx.
"""
import asyncio
import inspect
import logging
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

import httpx

from buddyscript.buddy_datatypes import ScriptError
from buddyscript.buddy_printer import stringify
from buddyscript.buddy_runtime import BuiltinLibrary

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.x.ai/v1"
DEFAULT_MODEL = "grok-3-latest"
DRY_RUN_REPLY = "[AI Response Placeholder]"
NO_AGENT_MESSAGE = "AI agent not available. Ensure GROK_API_KEY is set."

# Script option spelling -> request field
_OPTION_FIELDS = {
    "temperature": "temperature",
    "maxTokens": "max_tokens",
    "max_tokens": "max_tokens",
    "topP": "top_p",
    "top_p": "top_p",
    "model": "model",
}


class ChatAgent:
    """Keeps one conversation with a chat-completions endpoint."""

    def __init__(self, api_key: str, *, base_url: str = DEFAULT_BASE_URL, model: str = DEFAULT_MODEL,
                 timeout: float = 60.0, retries: int = 2, backoff: float = 0.5,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.transport = transport
        self.history: List[Dict[str, str]] = []

    @classmethod
    def from_env(cls, environ: Mapping) -> Optional['ChatAgent']:
        """Builds an agent from ``GROK_API_KEY`` / ``GROK_BASE_URL`` / ``GROK_MODEL``; None without a key."""
        api_key = environ.get("GROK_API_KEY")
        if not api_key:
            return None
        return cls(api_key,
                   base_url=environ.get("GROK_BASE_URL") or DEFAULT_BASE_URL,
                   model=environ.get("GROK_MODEL") or DEFAULT_MODEL)

    async def process_user_input(self, text: str, options: Optional[Mapping] = None) -> Dict[str, Any]:
        opts = dict(options or {})
        user_message = {"role": "user", "content": text}
        messages = [*self.history, user_message]
        system = opts.pop("system", None)
        if system:
            messages.insert(0, {"role": "system", "content": stringify(system)})
        payload: Dict[str, Any] = {"model": self.model, "messages": messages}
        for key, value in opts.items():
            name = _OPTION_FIELDS.get(key)
            if name is not None and value is not None:
                payload[name] = value

        data = await self._post("/chat/completions", payload)
        try:
            content = data["choices"][0]["message"].get("content") or ""
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise RuntimeError(f"Unexpected chat completion response: {str(data)[:200]}") from e
        self.history.extend([user_message, {"role": "assistant", "content": content}])
        return {"content": content, "model": data.get("model"), "usage": data.get("usage")}

    async def _post(self, path: str, payload: Dict[str, Any]) -> Any:
        url = self.base_url + path
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True,
                                     transport=self.transport) as client:
            last_exc = None
            for attempt in range(self.retries + 1):
                try:
                    resp = await client.post(url, json=payload, headers=headers)
                    if 200 <= resp.status_code < 300:
                        return resp.json()
                    preview = (resp.text or "")[:200]
                    raise RuntimeError(f"HTTP {resp.status_code} for {url}: {preview}")
                except (httpx.HTTPError, RuntimeError, ValueError) as e:
                    last_exc = e
                    if attempt < self.retries:
                        logger.debug("AI request attempt %d failed: %s", attempt + 1, e)
                        await asyncio.sleep(self.backoff * (2 ** attempt))
                        continue
                    logger.exception("AI request to %s failed", url)
                    raise last_exc


class AILib(BuiltinLibrary):
    """AI builtins, gated by ``enable_ai``. One agent is created lazily per runner."""

    def __init__(self, runner):
        super().__init__(runner)
        self.cached_agent = None

    def agent(self):
        if self.config.agent is not None:
            return self.config.agent
        if self.cached_agent is None:
            environ = {**dict(self.config.environ), **self.runner.env_overlay}
            self.cached_agent = ChatAgent.from_env(environ)
            if self.cached_agent is None:
                logger.warning("GROK_API_KEY is not set; AI builtins are unavailable")
        return self.cached_agent

    async def request(self, label: str, prompt, options=None) -> str:
        text = stringify(prompt)
        if self.config.dry_run:
            self.emit(f"[DRY RUN] ai.{label}: {text}")
            return DRY_RUN_REPLY
        agent = self.agent()
        if agent is None:
            raise ScriptError(NO_AGENT_MESSAGE)
        if options is not None:
            result = agent.process_user_input(text, options)
        else:
            result = agent.process_user_input(text)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, Mapping):
            content = result.get("content")
        else:
            content = getattr(result, "content", None)
        return content or ""

    async def ai_ask(self, prompt):
        return await self.request("ask", prompt)

    async def ai_chat(self, message):
        return await self.request("chat", message)

    async def ai_complete(self, prompt, options=None):
        opts = dict(options) if isinstance(options, dict) else {}
        return await self.request("complete", prompt, opts)

    async def _grok(self, prompt):
        return await self.ai_ask(prompt)

    def namespaces(self) -> Dict[str, Any]:
        return {
            "ai": {
                "ask": self.ai_ask,
                "chat": self.ai_chat,
                "complete": self.ai_complete,
            }
        }

"""Chat providers: hosted HTTP APIs and local agent CLIs."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from .config import Settings
from .errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatMessage:
    role: str  # system | user | assistant
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ChatOptions:
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    stop_sequences: list[str] | None = None


@dataclass
class ChatResponse:
    content: str
    model: str
    usage: dict[str, int] = field(default_factory=dict)


@runtime_checkable
class ChatProvider(Protocol):
    name: str

    async def chat(self, messages: list[ChatMessage], options: ChatOptions | None = None) -> ChatResponse: ...


def is_provider_available(provider: ChatProvider) -> bool:
    """Providers without an availability check are assumed reachable."""
    check = getattr(provider, "is_available", None)
    return bool(check()) if callable(check) else True


class _HTTPProvider:
    """Shared request/error handling for JSON chat APIs."""

    name = "http"

    def __init__(self, *, base_url: str, headers: dict[str, str] | None = None, timeout_seconds: float = 300.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = headers or {}
        self._timeout = httpx.Timeout(timeout_seconds)

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        # Drop unset options so APIs apply their own defaults
        body = {k: v for k, v in body.items() if v is not None}
        try:
            async with httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout) as client:
                resp = await client.post(path, json=body, headers=self._headers)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"{self.name} API error {e.response.status_code}: {e.response.text}", provider=self.name
            ) from e
        except httpx.RequestError as e:
            raise ProviderError(f"{self.name} request failed: {e}", provider=self.name) from e


class AnthropicProvider(_HTTPProvider):
    name = "anthropic"

    def __init__(self, api_key: str, model: str | None = None, base_url: str = "https://api.anthropic.com") -> None:
        super().__init__(
            base_url=base_url,
            headers={"x-api-key": api_key, "anthropic-version": "2023-06-01"},
        )
        self.default_model = model or "claude-sonnet-4-20250514"

    async def chat(self, messages: list[ChatMessage], options: ChatOptions | None = None) -> ChatResponse:
        options = options or ChatOptions()
        system = next((m.content for m in messages if m.role == "system"), None)
        data = await self._post(
            "/v1/messages",
            {
                "model": options.model or self.default_model,
                "max_tokens": options.max_tokens or 4096,
                "system": system,
                "messages": [m.to_dict() for m in messages if m.role != "system"],
                "temperature": options.temperature,
                "stop_sequences": options.stop_sequences,
            },
        )
        text = next((c.get("text", "") for c in data.get("content", []) if c.get("type") == "text"), "")
        usage = data.get("usage") or {}
        return ChatResponse(
            content=text,
            model=data.get("model", options.model or self.default_model),
            usage={
                "input_tokens": int(usage.get("input_tokens", 0)),
                "output_tokens": int(usage.get("output_tokens", 0)),
            },
        )


class OpenAIProvider(_HTTPProvider):
    name = "openai"

    def __init__(self, api_key: str, model: str | None = None, base_url: str = "https://api.openai.com/v1") -> None:
        super().__init__(base_url=base_url, headers={"Authorization": f"Bearer {api_key}"})
        self.default_model = model or "gpt-4o"

    async def chat(self, messages: list[ChatMessage], options: ChatOptions | None = None) -> ChatResponse:
        options = options or ChatOptions()
        data = await self._post(
            "/chat/completions",
            {
                "model": options.model or self.default_model,
                "messages": [m.to_dict() for m in messages],
                "max_tokens": options.max_tokens or 4096,
                "temperature": options.temperature,
                "stop": options.stop_sequences,
            },
        )
        choices = data.get("choices") or [{}]
        usage = data.get("usage") or {}
        return ChatResponse(
            content=(choices[0].get("message") or {}).get("content") or "",
            model=data.get("model", options.model or self.default_model),
            usage={
                "input_tokens": int(usage.get("prompt_tokens", 0)),
                "output_tokens": int(usage.get("completion_tokens", 0)),
            },
        )


class OllamaProvider(_HTTPProvider):
    name = "ollama"

    def __init__(self, base_url: str = "http://localhost:11434", model: str | None = None) -> None:
        super().__init__(base_url=base_url)
        self.default_model = model or "llama3.2"

    async def chat(self, messages: list[ChatMessage], options: ChatOptions | None = None) -> ChatResponse:
        options = options or ChatOptions()
        model_options = {
            "temperature": options.temperature,
            "num_predict": options.max_tokens,
            "stop": options.stop_sequences,
        }
        data = await self._post(
            "/api/chat",
            {
                "model": options.model or self.default_model,
                "messages": [m.to_dict() for m in messages],
                "stream": False,
                "options": {k: v for k, v in model_options.items() if v is not None},
            },
        )
        usage = {}
        if data.get("eval_count"):
            usage = {"input_tokens": int(data.get("prompt_eval_count", 0)), "output_tokens": int(data["eval_count"])}
        return ChatResponse(
            content=(data.get("message") or {}).get("content", ""),
            model=data.get("model", options.model or self.default_model),
            usage=usage,
        )


# =============================================================================
# CLI providers
# =============================================================================


def format_messages(messages: list[ChatMessage]) -> str:
    """Flatten a conversation into a single prompt for non-chat CLIs."""
    labels = {"system": "System", "user": "User", "assistant": "Assistant"}
    parts = []
    for m in messages:
        label = labels.get(m.role)
        parts.append(f"{label}: {m.content}" if label else m.content)
    return "\n\n".join(parts)


class CLIProvider:
    """Runs a local agent CLI, writing the prompt to stdin."""

    def __init__(
        self,
        name: str,
        command: str,
        *,
        args: list[str] | None = None,
        model: str | None = None,
        model_flag: str | None = "--model",
        timeout_seconds: float = 300.0,
    ) -> None:
        self.name = name
        self.command = command
        self.args = args or []
        self.model = model
        self.model_flag = model_flag
        self.timeout_seconds = timeout_seconds

    def is_available(self) -> bool:
        return shutil.which(self.command) is not None

    def build_argv(self, model: str | None) -> list[str]:
        argv = [self.command, *self.args]
        if model and self.model_flag:
            argv += [self.model_flag, model]
        return argv

    async def chat(self, messages: list[ChatMessage], options: ChatOptions | None = None) -> ChatResponse:
        options = options or ChatOptions()
        model = options.model or self.model
        prompt = format_messages(messages)
        argv = self.build_argv(model)
        logger.debug("Executing %s CLI (model=%s, prompt_length=%d)", self.name, model, len(prompt))

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProviderError(f"{self.name} CLI could not be started: {e}", provider=self.name) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(prompt.encode()), timeout=self.timeout_seconds
            )
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ProviderError(
                f"{self.name} CLI timed out after {self.timeout_seconds}s", provider=self.name
            ) from e

        if stderr:
            logger.warning("%s CLI stderr: %s", self.name, stderr.decode(errors="replace").strip())
        if proc.returncode != 0:
            raise ProviderError(f"{self.name} CLI exited with code {proc.returncode}", provider=self.name)

        return ChatResponse(content=stdout.decode(errors="replace").strip(), model=f"{self.name}:{model or 'default'}")


def claude_code_provider(command: str = "claude", model: str = "sonnet", timeout_seconds: float = 300.0) -> CLIProvider:
    return CLIProvider("claude-code", command, args=["--print"], model=model, timeout_seconds=timeout_seconds)


def gemini_cli_provider(
    command: str = "gemini", model: str = "gemini-2.0-flash", timeout_seconds: float = 120.0
) -> CLIProvider:
    return CLIProvider("gemini-cli", command, model=model, timeout_seconds=timeout_seconds)


def codex_provider(command: str = "codex", timeout_seconds: float = 300.0) -> CLIProvider:
    # `codex exec -` reads the prompt from stdin
    return CLIProvider("codex", command, args=["exec", "-"], model_flag=None, timeout_seconds=timeout_seconds)


# =============================================================================
# Registry
# =============================================================================


class ProviderRegistry:
    """Resolves providers by name; custom registrations take precedence."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._custom: dict[str, ChatProvider] = {}
        self._cache: dict[str, ChatProvider] = {}

    def register(self, name: str, provider: ChatProvider) -> None:
        self._custom[name] = provider
        logger.info("Registered custom provider %s", name)

    def unregister(self, name: str) -> None:
        self._custom.pop(name, None)

    def get(self, name: str | None = None) -> ChatProvider | None:
        name = name or self.settings.default_provider
        if name in self._custom:
            return self._custom[name]
        if name not in self._cache:
            provider = self._build(name)
            if provider is None:
                return None
            self._cache[name] = provider
        return self._cache[name]

    def get_default(self) -> ChatProvider | None:
        return self.get(self.settings.default_provider)

    def names(self) -> list[str]:
        return sorted({"anthropic", "openai", "ollama", "claude-code", "gemini-cli", "codex", *self._custom})

    def _build(self, name: str) -> ChatProvider | None:
        s = self.settings
        timeout = float(s.agent_timeout)
        if name == "anthropic":
            if not s.anthropic_api_key:
                return None
            return AnthropicProvider(s.anthropic_api_key, s.anthropic_model, s.anthropic_base_url)
        if name == "openai":
            if not s.openai_api_key:
                return None
            return OpenAIProvider(s.openai_api_key, s.openai_model, s.openai_base_url)
        if name == "ollama":
            return OllamaProvider(s.ollama_base_url, s.ollama_model)
        if name == "claude-code":
            return claude_code_provider(s.claude_cmd, timeout_seconds=timeout)
        if name == "gemini-cli":
            return gemini_cli_provider(s.gemini_cmd, timeout_seconds=timeout)
        if name == "codex":
            return codex_provider(s.codex_cmd, timeout_seconds=timeout)
        return None

    def cli_availability(self) -> dict[str, bool]:
        result = {}
        for name in ("claude-code", "gemini-cli", "codex"):
            provider = self.get(name)
            result[name] = provider is not None and is_provider_available(provider)
        return result

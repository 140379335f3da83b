"""Pick an agent type for a free-form task description with one LLM call."""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, replace
from typing import Any

from ..agents.definitions import BUILTIN_AGENT_TYPES
from ..config import SmartDispatcherConfig
from ..providers import ChatMessage, ChatOptions, ChatProvider

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an AI task router. Your job is to analyze a task description and select the most appropriate agent type to handle it.

Available agents and their capabilities:
- coder: write-code, edit-code, refactor, debug, implement features, fix bugs
- researcher: search-code, analyze-patterns, explore-codebase, find information
- tester: write-tests, run-tests, coverage-analysis, test automation
- reviewer: code-review, security-review, best-practices, quality assurance
- adversarial: break-code, edge-case-analysis, security testing, fault injection
- architect: system-design, technical-decisions, architecture planning
- coordinator: task-decomposition, workflow-management, orchestration
- analyst: data-analysis, performance-profiling, metrics evaluation
- devops: ci-cd-setup, containerization, kubernetes, deployment, infrastructure
- documentation: api-docs, user-guides, tutorials, technical writing
- security-auditor: vulnerability-scanning, compliance, security assessment

Analyze the task and respond ONLY with a JSON object in this exact format:
{"agentType":"<type>","confidence":<0.0-1.0>,"reasoning":"<brief explanation>"}

Do not include any other text, markdown formatting, or code blocks. Just the raw JSON."""

MAX_CACHE_ENTRIES = 1000

_JSON_SPAN_RE = re.compile(r"\{.*\}", re.DOTALL)
_TYPE_SEPARATOR_RE = re.compile(r"[_\s]")

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193


def fnv1a_32(text: str) -> int:
    """FNV-1a over UTF-16 code units, so keys match across runtimes."""
    h = FNV_OFFSET_BASIS
    data = text.encode("utf-16-le", "surrogatepass")
    for i in range(0, len(data), 2):
        h ^= data[i] | (data[i + 1] << 8)
        h = (h * FNV_PRIME) & 0xFFFFFFFF
    return h


def cache_key(description: str) -> str:
    return f"dispatch:{fnv1a_32(description):x}"


@dataclass
class DispatchDecision:
    agent_type: str
    confidence: float
    reasoning: str
    cached: bool = False
    latency_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _CacheEntry:
    decision: DispatchDecision
    expires_at: float


class SmartDispatcher:
    def __init__(
        self,
        provider: ChatProvider | None,
        config: SmartDispatcherConfig | None = None,
        *,
        model: str | None = None,
        valid_types: Iterable[str] = BUILTIN_AGENT_TYPES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.config = config or SmartDispatcherConfig()
        self.model = model
        self.valid_types = frozenset(valid_types)
        self._clock = clock
        self._cache: dict[str, _CacheEntry] = {}
        logger.debug(
            "Smart dispatcher initialized (enabled=%s, cache=%s, ttl=%dms)",
            self.config.enabled,
            self.config.cache_enabled,
            self.config.cache_ttl_ms,
        )

    def is_enabled(self) -> bool:
        return self.config.enabled and self.provider is not None

    def reconfigure(self, config: SmartDispatcherConfig) -> bool:
        if config == self.config:
            return False
        self.config = config
        self._cache.clear()
        return True

    async def dispatch(self, description: str) -> DispatchDecision | None:
        """Return a decision, or ``None`` when dispatching is disabled.

        Never raises: any failure degrades to the fallback agent type.
        """
        if not self.is_enabled():
            return None

        started = self._clock()
        truncated = description[: self.config.max_description_length]
        try:
            if self.config.cache_enabled:
                hit = self._get_cached(truncated)
                if hit is not None:
                    logger.debug("Cache hit for dispatch: %s", truncated[:50])
                    return replace(hit, cached=True, latency_ms=self._elapsed_ms(started))

            decision = await self.select_agent_type(truncated)
            decision.latency_ms = self._elapsed_ms(started)

            if decision.confidence < self.config.confidence_threshold:
                logger.debug(
                    "Low confidence dispatch (%.2f < %.2f), %s -> %s",
                    decision.confidence,
                    self.config.confidence_threshold,
                    decision.agent_type,
                    self.config.fallback_agent_type,
                )
                decision.agent_type = self.config.fallback_agent_type
                decision.reasoning = f"Low confidence ({decision.confidence:.2f}), using fallback agent"

            if self.config.cache_enabled:
                self._store(truncated, decision)

            logger.info(
                "Task dispatched to %s (confidence=%.2f, %dms)",
                decision.agent_type,
                decision.confidence,
                decision.latency_ms,
            )
            return decision
        except Exception as exc:
            logger.error("Dispatch failed, using fallback: %s", exc)
            return DispatchDecision(
                agent_type=self.config.fallback_agent_type,
                confidence=0.0,
                reasoning=f"Dispatch failed: {exc}. Using fallback agent.",
                latency_ms=self._elapsed_ms(started),
            )

    async def select_agent_type(self, description: str) -> DispatchDecision:
        if self.provider is None:
            raise RuntimeError("No provider available")
        response = await self.provider.chat(
            [ChatMessage("system", SYSTEM_PROMPT), ChatMessage("user", description)],
            ChatOptions(model=self.model, max_tokens=100, temperature=0),
        )
        return self.parse_response(response.content)

    def parse_response(self, content: str) -> DispatchDecision:
        try:
            match = _JSON_SPAN_RE.search(content)
            if not match:
                raise ValueError("No JSON found in response")
            parsed = json.loads(match.group(0))
            if not isinstance(parsed, dict):
                raise ValueError("Response JSON is not an object")
            raw_type = parsed.get("agentType")
            if not raw_type or not isinstance(raw_type, str):
                raise ValueError("Invalid or missing agentType")

            normalized = _TYPE_SEPARATOR_RE.sub("-", raw_type.lower())
            agent_type = normalized if normalized in self.valid_types else self.config.fallback_agent_type

            confidence = parsed.get("confidence")
            if isinstance(confidence, (int, float)) and not isinstance(confidence, bool):
                confidence = max(0.0, min(1.0, float(confidence)))
            else:
                confidence = 0.5

            reasoning = parsed.get("reasoning")
            return DispatchDecision(
                agent_type=agent_type,
                confidence=confidence,
                reasoning=reasoning if isinstance(reasoning, str) else "No reasoning provided",
            )
        except ValueError as exc:
            logger.warning("Failed to parse dispatch response %r: %s", content, exc)
            return DispatchDecision(
                agent_type=self.config.fallback_agent_type,
                confidence=0.0,
                reasoning=f"Failed to parse response: {exc}",
            )

    def _get_cached(self, description: str) -> DispatchDecision | None:
        key = cache_key(description)
        entry = self._cache.get(key)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            del self._cache[key]
            return None
        return entry.decision

    def _store(self, description: str, decision: DispatchDecision) -> None:
        self._cache[cache_key(description)] = _CacheEntry(
            decision=replace(decision),
            expires_at=self._clock() + self.config.cache_ttl_ms / 1000,
        )
        if len(self._cache) > MAX_CACHE_ENTRIES:
            self._prune()

    def _prune(self) -> None:
        now = self._clock()
        for key in [k for k, entry in self._cache.items() if now > entry.expires_at]:
            del self._cache[key]

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.debug("Dispatch cache cleared")

    def cache_stats(self) -> dict[str, Any]:
        return {"size": len(self._cache), "enabled": self.config.cache_enabled}

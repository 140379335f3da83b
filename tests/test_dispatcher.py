import pytest

from agentstack.config import SmartDispatcherConfig
from agentstack.tasks.dispatcher import SmartDispatcher, cache_key, fnv1a_32
from tests.conftest import FakeChatProvider


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _dispatcher(responses=None, **config) -> tuple[SmartDispatcher, FakeChatProvider, _Clock]:
    chat = FakeChatProvider(responses)
    clock = _Clock()
    return SmartDispatcher(chat, SmartDispatcherConfig(**config), model="router", clock=clock), chat, clock


def test_fnv1a_known_values() -> None:
    assert fnv1a_32("") == 0x811C9DC5
    assert fnv1a_32("a") == 0xE40C292C
    assert cache_key("a") == "dispatch:e40c292c"


def test_fnv1a_hashes_utf16_code_units() -> None:
    # Astral characters are two code units, so they must not collide with their BMP prefix
    assert fnv1a_32("\U0001F600") != fnv1a_32("\ud83d")
    assert fnv1a_32("é") != fnv1a_32("e")


@pytest.mark.parametrize(
    ("content", "agent_type", "confidence"),
    [
        ('{"agentType":"tester","confidence":0.92,"reasoning":"tests"}', "tester", 0.92),
        ('Sure! {"agentType":"Security_Auditor","confidence":0.8,"reasoning":"audit"} done', "security-auditor", 0.8),
        ('{"agentType":"security auditor","confidence":1.7}', "security-auditor", 1.0),
        ('{"agentType":"wizard","confidence":0.9}', "coder", 0.9),
        ('{"agentType":"devops","confidence":"high"}', "devops", 0.5),
        ('{"agentType":"devops","confidence":-3}', "devops", 0.0),
    ],
)
def test_parse_response_normalizes(content: str, agent_type: str, confidence: float) -> None:
    dispatcher, _, _ = _dispatcher()

    decision = dispatcher.parse_response(content)

    assert decision.agent_type == agent_type
    assert decision.confidence == pytest.approx(confidence)


@pytest.mark.parametrize("content", ["no json here", '{"confidence":0.9}', "{not json}"])
def test_parse_response_failures_fall_back(content: str) -> None:
    dispatcher, _, _ = _dispatcher()

    decision = dispatcher.parse_response(content)

    assert decision.agent_type == "coder"
    assert decision.confidence == 0.0
    assert decision.reasoning.startswith("Failed to parse response")


def test_missing_reasoning_gets_default() -> None:
    dispatcher, _, _ = _dispatcher()

    assert dispatcher.parse_response('{"agentType":"analyst","confidence":0.9}').reasoning == "No reasoning provided"


@pytest.mark.asyncio
async def test_dispatch_uses_router_options() -> None:
    dispatcher, chat, _ = _dispatcher(['{"agentType":"researcher","confidence":0.9,"reasoning":"explore"}'])

    decision = await dispatcher.dispatch("Find where sessions are created")

    assert decision.agent_type == "researcher"
    assert decision.cached is False
    messages, options = chat.calls[0]
    assert messages[0].role == "system"
    assert messages[1].content == "Find where sessions are created"
    assert (options.model, options.max_tokens, options.temperature) == ("router", 100, 0)


@pytest.mark.asyncio
async def test_low_confidence_uses_fallback() -> None:
    dispatcher, _, _ = _dispatcher(
        ['{"agentType":"architect","confidence":0.4,"reasoning":"maybe"}'], fallback_agent_type="reviewer"
    )

    decision = await dispatcher.dispatch("something vague")

    assert decision.agent_type == "reviewer"
    assert decision.confidence == pytest.approx(0.4)
    assert decision.reasoning == "Low confidence (0.40), using fallback agent"


@pytest.mark.asyncio
async def test_provider_error_falls_back() -> None:
    dispatcher, _, _ = _dispatcher([RuntimeError("timeout")])

    decision = await dispatcher.dispatch("anything")

    assert decision.agent_type == "coder"
    assert decision.confidence == 0.0
    assert decision.reasoning == "Dispatch failed: timeout. Using fallback agent."


@pytest.mark.asyncio
async def test_cache_hits_until_ttl_expires() -> None:
    dispatcher, chat, clock = _dispatcher(
        [
            '{"agentType":"tester","confidence":0.9,"reasoning":"a"}',
            '{"agentType":"documentation","confidence":0.9,"reasoning":"b"}',
        ],
        cache_ttl_ms=1000,
    )

    first = await dispatcher.dispatch("write tests")
    second = await dispatcher.dispatch("write tests")
    assert second.cached is True
    assert second.agent_type == first.agent_type
    assert first.cached is False
    assert len(chat.calls) == 1

    clock.now += 2
    third = await dispatcher.dispatch("write tests")
    assert third.agent_type == "documentation"
    assert len(chat.calls) == 2
    assert dispatcher.cache_stats() == {"size": 1, "enabled": True}


@pytest.mark.asyncio
async def test_descriptions_are_truncated_before_routing() -> None:
    dispatcher, chat, _ = _dispatcher(max_description_length=10)

    await dispatcher.dispatch("0123456789-and-more")

    assert chat.calls[0][0][1].content == "0123456789"


@pytest.mark.asyncio
async def test_disabled_dispatcher_returns_none() -> None:
    dispatcher, chat, _ = _dispatcher(enabled=False)
    no_provider = SmartDispatcher(None)

    assert await dispatcher.dispatch("x") is None
    assert await no_provider.dispatch("x") is None
    assert chat.calls == []


@pytest.mark.asyncio
async def test_reconfigure_clears_cache() -> None:
    dispatcher, _, _ = _dispatcher(['{"agentType":"tester","confidence":0.9}'])
    await dispatcher.dispatch("write tests")

    assert dispatcher.reconfigure(SmartDispatcherConfig()) is False
    assert dispatcher.cache_stats()["size"] == 1
    assert dispatcher.reconfigure(SmartDispatcherConfig(confidence_threshold=0.5)) is True
    assert dispatcher.cache_stats()["size"] == 0

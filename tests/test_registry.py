from agentstack.agents.definitions import BUILTIN_AGENT_TYPES, AgentDefinition, builtin_definitions
from agentstack.agents.registry import AgentRegistry


def _custom(agent_type: str = "translator", name: str = "Translator") -> AgentDefinition:
    return AgentDefinition(type=agent_type, name=name, description="Translates text", system_prompt="Translate.")


def test_builtins_are_registered_with_prompts() -> None:
    registry = AgentRegistry()

    assert len(BUILTIN_AGENT_TYPES) == 11
    assert registry.list_types() == list(BUILTIN_AGENT_TYPES)
    assert "security-auditor" in BUILTIN_AGENT_TYPES
    for definition in builtin_definitions():
        assert definition.system_prompt
        assert definition.capabilities


def test_core_types_cannot_be_overridden_or_removed() -> None:
    registry = AgentRegistry()
    original = registry.get("coder")

    assert registry.register(_custom("coder", "Impostor")) is False
    assert registry.unregister("coder") is False
    assert registry.get("coder") is original


def test_custom_types_are_last_write_wins() -> None:
    registry = AgentRegistry()

    assert registry.register(_custom()) is True
    assert registry.register(_custom(name="Better Translator")) is True

    assert registry.get("translator").name == "Better Translator"
    assert not registry.is_builtin("translator")
    assert registry.counts() == {"core": 11, "custom": 1, "total": 12}


def test_unregister_and_clear_custom() -> None:
    registry = AgentRegistry()
    registry.register(_custom())
    registry.register(_custom("summarizer", "Summarizer"))

    assert registry.unregister("translator") is True
    assert registry.unregister("translator") is False

    registry.clear_custom()
    assert not registry.has("summarizer")
    assert registry.has("coder")


def test_definition_to_dict_omits_prompt() -> None:
    data = AgentRegistry().get("tester").to_dict()

    assert data["type"] == "tester"
    assert "system_prompt" not in data
    assert isinstance(data["capabilities"], list)

"""Built-in agent personas. System prompts live in ``prompts/<type>.md``."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Final

PROMPTS_DIR: Final[Path] = Path(__file__).with_name("prompts")


@dataclass(frozen=True)
class AgentDefinition:
    type: str
    name: str
    description: str
    system_prompt: str
    capabilities: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, object]:
        return {
            "type": self.type,
            "name": self.name,
            "description": self.description,
            "capabilities": list(self.capabilities),
        }


# type -> (name, description, capabilities)
_BUILTINS: Final[dict[str, tuple[str, str, tuple[str, ...]]]] = {
    "coder": (
        "Coder",
        "Write and modify code with clean, maintainable implementations",
        ("write-code", "edit-code", "refactor", "debug", "implement-features"),
    ),
    "researcher": (
        "Researcher",
        "Research and gather information from codebases and documentation",
        ("search-code", "read-documentation", "analyze-patterns", "gather-requirements", "explore-codebase"),
    ),
    "tester": (
        "Tester",
        "Write and run tests to ensure code quality",
        ("write-tests", "run-tests", "identify-edge-cases", "coverage-analysis", "test-debugging"),
    ),
    "reviewer": (
        "Reviewer",
        "Review code for quality, security, and best practices",
        ("code-review", "security-review", "performance-review", "best-practices", "feedback"),
    ),
    "adversarial": (
        "Adversarial Reviewer",
        "Aggressive critical code reviewer that actively tries to break code",
        ("adversarial-review", "security-audit", "edge-case-analysis", "break-code"),
    ),
    "architect": (
        "Architect",
        "Design system architecture and make technical decisions",
        ("system-design", "technical-decisions", "architecture-review", "documentation", "trade-off-analysis"),
    ),
    "coordinator": (
        "Coordinator",
        "Orchestrate multi-agent tasks and manage workflows",
        ("task-decomposition", "agent-coordination", "progress-tracking", "result-synthesis", "workflow-management"),
    ),
    "analyst": (
        "Analyst",
        "Analyze data, performance, and metrics",
        ("data-analysis", "performance-profiling", "metrics-collection", "trend-analysis", "reporting"),
    ),
    "devops": (
        "DevOps Engineer",
        "Manage deployment, CI/CD, containers, and infrastructure automation",
        (
            "ci-cd-setup",
            "containerization",
            "kubernetes-deployment",
            "infrastructure-automation",
            "monitoring-setup",
            "security-hardening",
            "cloud-deployment",
            "performance-optimization",
        ),
    ),
    "documentation": (
        "Documentation Specialist",
        "Create comprehensive documentation, API docs, guides, and tutorials",
        (
            "api-documentation",
            "user-guides",
            "tutorials",
            "code-documentation",
            "architecture-docs",
            "runbooks",
            "readme-creation",
            "documentation-review",
        ),
    ),
    "security-auditor": (
        "Security Auditor",
        "Comprehensive security analysis, vulnerability scanning, and compliance checking",
        (
            "vulnerability-scanning",
            "code-security-review",
            "penetration-testing",
            "compliance-checking",
            "dependency-audit",
            "threat-modeling",
            "security-documentation",
            "remediation-planning",
        ),
    ),
}

BUILTIN_AGENT_TYPES: Final[tuple[str, ...]] = tuple(_BUILTINS)


def load_prompt(agent_type: str, prompts_dir: Path = PROMPTS_DIR) -> str:
    return (prompts_dir / f"{agent_type}.md").read_text(encoding="utf-8").strip()


@lru_cache(maxsize=1)
def builtin_definitions() -> tuple[AgentDefinition, ...]:
    return tuple(
        AgentDefinition(
            type=agent_type,
            name=name,
            description=description,
            system_prompt=load_prompt(agent_type),
            capabilities=capabilities,
        )
        for agent_type, (name, description, capabilities) in _BUILTINS.items()
    )

"""
Agent Stack

Multi-agent orchestration: ephemeral and persistent agents, priority task
queues, consensus gating for risky subtasks, semantic drift detection and
resource exhaustion monitoring, backed by PostgreSQL (or SQLite for tests).
"""

__version__ = "0.1.0"

# Configuration
from agentstack.config import (
    ConsensusConfig,
    DriftDetectionConfig,
    ResourceExhaustionConfig,
    Settings,
    SmartDispatcherConfig,
)

# Errors
from agentstack.errors import AgentStackError

# Runtime
from agentstack.runtime import AgentStack

# Task pipeline
from agentstack.tasks.service import TaskCreateResult, TaskService

__all__ = [
    # Version
    "__version__",
    # Config
    "Settings",
    "ConsensusConfig",
    "DriftDetectionConfig",
    "ResourceExhaustionConfig",
    "SmartDispatcherConfig",
    # Errors
    "AgentStackError",
    # Runtime
    "AgentStack",
    # Tasks
    "TaskService",
    "TaskCreateResult",
]

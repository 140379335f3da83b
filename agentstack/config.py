"""Configuration settings for the agent orchestration stack."""

from enum import Enum

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ReviewerStrategy(str, Enum):
    ADVERSARIAL = "adversarial"
    DIFFERENT_MODEL = "different-model"
    HUMAN = "human"


class DriftBehavior(str, Enum):
    WARN = "warn"
    PREVENT = "prevent"


class ConsensusConfig(BaseModel):
    """Approval gate for risky subtask spawning."""

    enabled: bool = False
    require_for_risk_levels: list[RiskLevel] = Field(
        default_factory=lambda: [RiskLevel.HIGH, RiskLevel.MEDIUM]
    )
    reviewer_strategy: ReviewerStrategy = ReviewerStrategy.ADVERSARIAL
    timeout_ms: int = Field(default=300_000, gt=0)
    max_depth: int = Field(default=5, ge=0)
    auto_reject: bool = False
    high_risk_agent_types: list[str] = Field(
        default_factory=lambda: ["coder", "devops", "security-auditor"]
    )
    medium_risk_agent_types: list[str] = Field(
        default_factory=lambda: ["architect", "coordinator", "analyst"]
    )
    high_risk_patterns: list[str] = Field(
        default_factory=lambda: [
            "delete",
            "remove",
            "drop",
            "deploy",
            "production",
            "credentials",
            "secret",
            "password",
            "token",
            "api key",
        ]
    )
    medium_risk_patterns: list[str] = Field(
        default_factory=lambda: ["modify", "update", "change", "configure", "install"]
    )


class DriftDetectionConfig(BaseModel):
    """Semantic similarity check between a new task and its ancestors."""

    enabled: bool = False
    threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    warning_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    ancestor_depth: int = Field(default=3, ge=1)
    behavior: DriftBehavior = DriftBehavior.WARN
    async_embedding: bool = True

    @model_validator(mode="after")
    def _warning_below_threshold(self) -> "DriftDetectionConfig":
        if self.warning_threshold is not None and self.warning_threshold >= self.threshold:
            raise ValueError("warning_threshold must be lower than threshold")
        return self


class ResourceThresholds(BaseModel):
    max_files_accessed: int = Field(default=50, gt=0)
    max_api_calls: int = Field(default=100, gt=0)
    max_subtasks_spawned: int = Field(default=20, gt=0)
    max_time_without_deliverable_ms: int = Field(default=1_800_000, gt=0)
    max_tokens_consumed: int = Field(default=500_000, gt=0)


class ResourceExhaustionConfig(BaseModel):
    """Phased limits on per-agent resource usage."""

    enabled: bool = True
    thresholds: ResourceThresholds = Field(default_factory=ResourceThresholds)
    warning_threshold_percent: float = Field(default=0.7, gt=0.0, le=1.0)
    check_interval_ms: int = Field(default=10_000, gt=0)
    auto_terminate: bool = False
    pause_on_intervention: bool = True


class SmartDispatcherConfig(BaseModel):
    """LLM-assisted selection of an agent type for a free-form task."""

    enabled: bool = True
    cache_enabled: bool = True
    cache_ttl_ms: int = Field(default=3_600_000, gt=0)
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    fallback_agent_type: str = "coder"
    max_description_length: int = Field(default=1000, gt=0)
    dispatch_model: str = "claude-haiku-4-5-20251001"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "agentstack"
    db_user: str = "agent"
    db_password: str = "agent"
    # Full URL override, e.g. sqlite+aiosqlite:///./agentstack.db
    database_url_override: str | None = Field(default=None, alias="AGENTSTACK_DATABASE_URL")

    # Redis
    redis_url: str = "redis://localhost:16379/0"
    redis_events_enabled: bool = False

    # Providers
    default_provider: str = "anthropic"
    anthropic_api_key: str | None = None
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o"
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.2"

    # Agent CLI commands
    claude_cmd: str = "claude"
    gemini_cmd: str = "gemini"
    codex_cmd: str = "codex"

    # Embeddings: "openai", "ollama" or unset
    embedding_provider: str | None = None
    embedding_model: str | None = None

    # Limits
    agent_timeout: int = 300  # seconds
    max_live_agents: int = 20
    llm_concurrency: int = 20
    pool_size_per_type: int = 10
    coordinator_max_workers: int = 5
    review_max_iterations: int = 3
    max_concurrent_review_loops: int = 5

    log_level: str = "INFO"

    consensus: ConsensusConfig = Field(default_factory=ConsensusConfig)
    drift_detection: DriftDetectionConfig = Field(default_factory=DriftDetectionConfig)
    resource_exhaustion: ResourceExhaustionConfig = Field(default_factory=ResourceExhaustionConfig)
    smart_dispatcher: SmartDispatcherConfig = Field(default_factory=SmartDispatcherConfig)

    @property
    def database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "AGENTSTACK_"
        env_file = ".env"
        env_nested_delimiter = "__"
        populate_by_name = True
        extra = "ignore"


# Global settings instance
settings = Settings()

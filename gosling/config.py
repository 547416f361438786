"""Settings via pydantic-settings with GOOSE_ env prefix.

A single frozen Settings value carries every policy knob the engine
interprets (mode, thresholds, role bindings, timeouts). It is built once
and passed into the Turn Controller at construction; nothing in the
engine reads the environment after that.
"""

from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gosling.session.schemas import ExecutionMode, ModelRole, ModelRoleBinding


class PermissionRule(BaseModel):
    """A user-configured CEL rule evaluated against each tool call."""

    name: str
    expression: str
    verdict: Literal["allow", "deny", "ask_user"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="GOOSE_", env_file=".env", frozen=True)

    # Execution policy
    mode: ExecutionMode = "smart_approve"
    max_turns: int = 1000
    permission_rules: list[PermissionRule] = Field(default_factory=list)

    # Context management
    auto_compact_threshold: float = Field(0.8, ge=0.0, le=1.0)
    compaction_keep_recent_turns: int = 2
    context_limit: int = 128_000

    # Security scanner
    security_prompt_enabled: bool = False
    security_prompt_threshold: float = Field(0.7, ge=0.0, le=1.0)

    # Extensions
    extension_timeout: float = 300.0  # seconds, per call
    max_concurrent_tool_calls: int = 8

    # Provider retry policy
    provider_max_retries: int = 3
    provider_retry_backoff: float = 1.0  # initial delay, doubles per attempt
    provider_retry_backoff_max: float = 30.0

    # Model bindings (main is required; the rest fall back)
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-5-20250514"
    lead_provider: str | None = None
    lead_model: str | None = None
    worker_provider: str | None = None
    worker_model: str | None = None
    planner_provider: str | None = None
    planner_model: str | None = None
    model_temperature: float | None = None
    max_tokens: int = 4096

    # Lead/worker switchover policy
    lead_turns: int = 3
    lead_failure_threshold: int = 2
    lead_fallback_turns: int = 2

    # Anthropic adapter
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Persistence
    db_url: str = "sqlite+aiosqlite:///gosling_sessions.db"

    log_level: str = "info"

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_turns < 1:
            raise ValueError("max_turns must be >= 1")
        if self.lead_turns < 1:
            raise ValueError("lead_turns must be >= 1")
        if self.compaction_keep_recent_turns < 0:
            raise ValueError("compaction_keep_recent_turns must be >= 0")
        if self.max_concurrent_tool_calls < 1:
            raise ValueError("max_concurrent_tool_calls must be >= 1")
        return self

    def role_bindings(self) -> dict[ModelRole, ModelRoleBinding]:
        """Resolve all four role bindings with their fallback rules.

        worker and planner fall back to the main binding when unset.
        lead falls back to the main provider when only a lead model is set,
        and to the whole main binding when neither is set.
        """
        params: dict[str, object] = {"max_tokens": self.max_tokens}
        if self.model_temperature is not None:
            params["temperature"] = self.model_temperature

        main = ModelRoleBinding(
            role="main",
            provider=self.provider,
            model=self.model,
            parameters=params,
            context_limit=self.context_limit,
        )

        def _bind(role: ModelRole, provider: str | None, model: str | None) -> ModelRoleBinding:
            if not provider and not model:
                return main.model_copy(update={"role": role})
            return ModelRoleBinding(
                role=role,
                provider=provider or self.provider,
                model=model or self.model,
                parameters=params,
                context_limit=self.context_limit,
            )

        return {
            "main": main,
            "lead": _bind("lead", self.lead_provider, self.lead_model),
            "worker": _bind("worker", self.worker_provider, self.worker_model),
            "planner": _bind("planner", self.planner_provider, self.planner_model),
        }

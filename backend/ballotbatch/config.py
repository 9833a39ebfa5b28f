"""Environment-driven settings for the Gemini batch pipeline.

Every field is read from the environment variable named in its
``validation_alias``; the field name itself is accepted too so tests can build
settings directly. Blank values fall back to the default, flags are only on for
the literal ``"true"`` and unparseable numbers fall back to the default.

``GEMINI_ENABLED``, ``BATCH_DEFAULT_HIDDEN``, ``GEMINI_MAX_ROWS`` and
``EMAIL_DRY_RUN`` have defaults that depend on ``APP_ENV``.
"""

from collections.abc import Mapping
from typing import Any

from pydantic import Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TEAM_EMAIL = "team@ballotbatch.org"

_FLAGS = {"gemini_enabled", "thinking_enabled", "default_hidden"}
_INTS = {
    "max_output_tokens",
    "thinking_budget",
    "max_analyze_jobs_per_run",
    "max_structure_jobs_per_run",
    "max_ingest_per_run",
    "max_enqueued_tokens",
    "max_rows_per_group",
}


class BatchSettings(BaseSettings):
    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    app_env: str = Field(default="development", validation_alias="APP_ENV")

    # Gemini
    gemini_enabled: bool | None = Field(default=None, validation_alias="GEMINI_ENABLED")
    gemini_api_key: str = Field(default="", validation_alias="GEMINI_API_KEY")
    model: str = Field(default="gemini-2.5-pro", validation_alias="GEMINI_MODEL")
    fallback_model: str = Field(default="gemini-1.5-pro", validation_alias="GEMINI_MODEL_FALLBACK")
    max_output_tokens: int = Field(default=4096, validation_alias="GEMINI_MAX_OUTPUT_TOKENS")
    thinking_enabled: bool = Field(default=False, validation_alias="GEMINI_THINKING")
    thinking_budget: int = Field(default=0, validation_alias="GEMINI_THINKING_BUDGET")

    # Per-run caps
    max_analyze_jobs_per_run: int = Field(default=3, validation_alias="GEMINI_MAX_ANALYZE_JOBS_PER_RUN")
    max_structure_jobs_per_run: int = Field(default=3, validation_alias="GEMINI_MAX_STRUCTURE_JOBS_PER_RUN")
    max_ingest_per_run: int = Field(default=2, validation_alias="GEMINI_MAX_INGEST_PER_RUN")
    max_enqueued_tokens: int = Field(default=5_000_000, validation_alias="GEMINI_MAX_ENQUEUED_TOKENS")
    max_rows_per_group: int | None = Field(default=None, validation_alias="GEMINI_MAX_ROWS")

    # Prompts, relative to the backend directory
    analyze_prompt_path: str = Field(default="prompts/analyze.txt", validation_alias="GEMINI_PROMPT_ANALYZE_PATH")
    structure_prompt_path: str = Field(
        default="prompts/structure.txt", validation_alias="GEMINI_PROMPT_STRUCTURE_PATH"
    )
    structure_schema_path: str = Field(
        default="prompts/structured-output.json", validation_alias="GEMINI_STRUCTURE_SCHEMA_PATH"
    )

    # Ingestion and email
    team_email: str = Field(default=DEFAULT_TEAM_EMAIL, validation_alias="BATCH_TEAM_EMAIL")
    default_hidden: bool | None = Field(default=None, validation_alias="BATCH_DEFAULT_HIDDEN")
    resend_api_key: str = Field(default="", validation_alias="RESEND_API_KEY")
    resend_from: str = Field(default="Ballot Batch <onboarding@resend.dev>", validation_alias="RESEND_FROM")
    email_dry_run: bool | None = Field(default=None, validation_alias="EMAIL_DRY_RUN")

    @field_validator("*", mode="before")
    @classmethod
    def _parse_env_text(cls, value: Any, info: ValidationInfo) -> Any:
        if not isinstance(value, str):
            return value
        name = info.field_name
        default = cls.model_fields[name].default
        value = value.strip()
        if not value:
            return default
        if name in _FLAGS:
            return value.lower() == "true"
        if name == "email_dry_run":
            return {"1": True, "0": False}.get(value)
        if name in _INTS:
            try:
                return int(value)
            except ValueError:
                return default
        return value

    @model_validator(mode="after")
    def _apply_environment_defaults(self) -> "BatchSettings":
        is_prod = self.is_production
        if self.gemini_enabled is None:
            self.gemini_enabled = is_prod
        if self.default_hidden is None:
            self.default_hidden = is_prod
        if self.max_rows_per_group is None:
            self.max_rows_per_group = 30 if is_prod else 100
        if self.email_dry_run is None:
            self.email_dry_run = self.app_env == "development"
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def inference_available(self) -> bool:
        """True when the pipeline is allowed to talk to Gemini."""
        return bool(self.gemini_enabled) and bool(self.gemini_api_key)


def load_settings(env: Mapping[str, str] | None = None) -> BatchSettings:
    """Build settings from the process environment, or from *env* alone when given."""
    if env is None:
        return BatchSettings()
    return BatchSettings.model_validate(dict(env))

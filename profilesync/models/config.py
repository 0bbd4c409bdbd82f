"""Configuration models for the profile sync engine."""

from typing import Literal

from pydantic import BaseModel, Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from profilesync.utils.retry import RetryPolicy

StageName = Literal["events", "properties", "aggregates"]

DEFAULT_TRACKED_EVENTS: dict[str, str] = {
    "BankAccountLinked": "total_bank_links",
    "DubAutoCopyInitiated": "total_copies",
    "Viewed Portfolio Details": "total_pdp_views",
    "Viewed Creator Profile": "total_creator_profile_views",
    "AchTransferInitiated": "total_ach_transfers",
    "Viewed Creator Paywall": "paywall_views",
    "SubscriptionCreated": "total_subscriptions",
    "$ae_session": "app_sessions",
    "Viewed Stripe Modal": "stripe_modal_views",
    "Tapped Creator Card": "creator_card_taps",
    "Tapped Portfolio Card": "portfolio_card_taps",
}

DEFAULT_PROFILE_PROPERTIES: dict[str, str] = {
    "income": "income",
    "netWorth": "net_worth",
    "investingActivity": "investing_activity",
    "investingExperienceYears": "investing_experience_years",
    "investingObjective": "investing_objective",
    "investmentType": "investment_type",
    "acquisitionSurvey": "acquisition_survey",
    "linkedBankAccount": "linked_bank_account",
}


class MixpanelConfig(BaseModel):
    """Configuration for the upstream analytics provider."""

    project_id: str = Field(default=..., description="Mixpanel project identifier")
    service_username: str = Field(default=..., description="Service account username")
    service_secret: str = Field(default=..., description="Service account secret")
    export_base_url: HttpUrl = Field(
        default=HttpUrl("https://data.mixpanel.com/api/2.0"),
        description="Raw event export API base URL",
    )
    api_base_url: HttpUrl = Field(
        default=HttpUrl("https://mixpanel.com/api/2.0"),
        description="Query API base URL (engage)",
    )
    request_timeout_seconds: float = Field(default=60.0, gt=0, description="Per-request timeout")
    tracked_events: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_TRACKED_EVENTS),
        description="Event name -> counter column",
    )
    profile_properties: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_PROFILE_PROPERTIES),
        description="Provider property name -> attribute column",
    )

    @model_validator(mode="after")
    def validate_disjoint_columns(self) -> "MixpanelConfig":
        """A column is either a counter or an attribute, never both."""
        overlap = set(self.tracked_events.values()) & set(self.profile_properties.values())
        if overlap:
            raise ValueError(f"columns mapped as both counter and attribute: {sorted(overlap)}")
        return self

    @property
    def counter_columns(self) -> list[str]:
        """Distinct counter columns in declaration order."""
        return list(dict.fromkeys(self.tracked_events.values()))

    @property
    def attribute_columns(self) -> list[str]:
        """Distinct attribute columns in declaration order."""
        return list(dict.fromkeys(self.profile_properties.values()))


class StorageConfig(BaseModel):
    """Configuration for the profile store."""

    database_url: str = Field(
        default="sqlite:///./data/profiles.db", description="SQLAlchemy database URL"
    )
    batch_size: int = Field(default=250, ge=1, le=1000, description="Rows per set-based upsert")
    echo: bool = Field(default=False, description="Echo SQL statements")


class SyncConfig(BaseModel):
    """Configuration for incremental sync and backfill behavior."""

    overlap_hours: float = Field(default=2.0, ge=0, description="Look-back applied to the watermark")
    cold_start_days: int = Field(default=45, ge=1, le=365, description="Window fetched without a watermark")
    time_budget_seconds: float = Field(
        default=140.0, gt=0, description="Execution budget for one invocation"
    )
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    backfill_days: int = Field(default=60, ge=1, description="Default historical backfill range")
    backfill_chunk_days: int = Field(default=15, ge=1, description="Days per backfill chunk")
    max_chunk_attempts: int = Field(default=3, ge=1, description="Attempts per chunk before failing")
    stale_run_minutes: int = Field(
        default=30, ge=1, description="Age after which an in-progress run is considered dead"
    )


class SourceConfig(BaseModel):
    """Pipeline stages run for one source."""

    stages: list[StageName] = Field(
        default_factory=lambda: ["events", "properties", "aggregates"],
        min_length=1,
        description="Stages in execution order",
    )

    @field_validator("stages")
    @classmethod
    def validate_unique_stages(cls, v: list[str]) -> list[str]:
        """Reject a stage listed twice."""
        if len(set(v)) != len(v):
            raise ValueError("stages must not repeat")
        return v


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        description="If True, output JSON logs. If False, use console format.",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional path to log file. If None, logs only to stdout.",
    )


class AppConfig(BaseSettings):
    """Main application configuration.

    Loaded from YAML by the config loader, or directly from environment
    variables with the APP_ prefix (nested fields use ``__``).
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    provider: MixpanelConfig
    storage: StorageConfig = Field(default_factory=StorageConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    sources: dict[str, SourceConfig] = Field(
        default_factory=lambda: {"mixpanel_users": SourceConfig()},
        description="Configured sources keyed by source_id",
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

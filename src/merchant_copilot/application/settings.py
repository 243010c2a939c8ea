"""
Pipeline configuration with environment variable support.

Every empirically chosen threshold of the turn pipeline is a named field.
Values resolve in this order: explicit arguments, COPILOT_* environment
variables, `.env`, then the defaults below. Profiles pass their `settings:`
block as explicit arguments.
"""

from pathlib import Path
from typing import Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from merchant_copilot.core.domain.confidence import StageWeights


class PipelineSettings(BaseSettings):
    """Thresholds and limits of the turn pipeline."""

    # Query rewriting
    rewrite_confidence_floor: float = Field(
        default=0.5, ge=0.0, le=1.0, description="Lower clamp of rewrite confidence"
    )

    # Confidence evaluation
    ambiguity_threshold: float = Field(
        default=0.3, ge=0.0, le=1.0, description="Stage confidence below which an ambiguity is reported"
    )
    confirmation_threshold: float = Field(
        default=0.5, ge=0.0, le=1.0, description="Overall confidence below which confirmation is asked"
    )
    max_rewrite_operations: int = Field(
        default=8, ge=0, description="Rewrite operation count reported as ambiguous"
    )
    weight_query_understanding: float = Field(default=0.15, ge=0.0)
    weight_intent_classification: float = Field(default=0.25, ge=0.0)
    weight_entity_extraction: float = Field(default=0.30, ge=0.0)
    weight_task_planning: float = Field(default=0.15, ge=0.0)
    weight_execution: float = Field(default=0.15, ge=0.0)

    # Boundary checks
    uncertainty_threshold: float = Field(
        default=0.5, ge=0.0, le=1.0, description="Intent confidence below which a human is suggested"
    )

    # Result cache
    cache_ttl_seconds: float = Field(default=3600, gt=0, description="Cache entry lifetime")
    cache_max_size: int = Field(default=1000, ge=1, description="Maximum cache entries")
    cache_cleanup_interval_seconds: float = Field(default=300, gt=0, description="Periodic cleanup interval")

    # Conversation
    context_message_window: int = Field(default=10, ge=1, description="Recent messages kept per context")

    # Skill execution
    max_concurrency: Optional[int] = Field(
        default=None, ge=1, description="Concurrent tasks per batch (None = all ready tasks)"
    )

    model_config = {
        "env_file": ".env",
        "env_prefix": "COPILOT_",
        "case_sensitive": False,
        "extra": "ignore",
    }

    @field_validator("max_concurrency", mode="before")
    @classmethod
    def _empty_means_unbounded(cls, value):
        if value in ("", 0, "0"):
            return None
        return value

    @property
    def stage_weights(self) -> StageWeights:
        return StageWeights(
            query_understanding=self.weight_query_understanding,
            intent_classification=self.weight_intent_classification,
            entity_extraction=self.weight_entity_extraction,
            task_planning=self.weight_task_planning,
            execution=self.weight_execution,
        )

    @classmethod
    def load_from_file(cls, config_path: Path) -> "PipelineSettings":
        """Load settings from a YAML configuration file."""
        if not config_path.exists():
            return cls()

        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

    def save_to_file(self, config_path: Path) -> None:
        """Save settings to a YAML configuration file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(self.model_dump(), f, default_flow_style=False, indent=2)

"""
Application Layer - Pipeline Factory

Builds a fully wired TurnPipeline from a YAML configuration profile.

Key Responsibilities:
- Load configuration profiles (configs/<profile>.yaml)
- Merge the profile's `settings:` block into PipelineSettings
- Instantiate infrastructure adapters (catalog, case library, cache,
  classifier, resolver, skills, text generator)
- Inject them into the domain components and the pipeline

Profile format:
    catalog_file: data/merchants.yaml       # relative to the config dir
    case_library_file: data/cases.yaml
    text_generator: llm                     # or "none"
    llm:
      config_path: llm_config.yaml
      system_prompt: ...
    settings:
      confirmation_threshold: 0.5
"""

from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from pydantic import ValidationError

from merchant_copilot.application.performance_monitor import PerformanceMonitor
from merchant_copilot.application.pipeline import TurnPipeline
from merchant_copilot.application.settings import PipelineSettings
from merchant_copilot.core.domain.boundary_checker import BoundaryChecker
from merchant_copilot.core.domain.confidence import ConfidenceEvaluator
from merchant_copilot.core.domain.context_switch import ContextSwitchDetector
from merchant_copilot.core.domain.errors import ConfigurationError
from merchant_copilot.core.domain.output_validator import OutputValidator
from merchant_copilot.core.domain.query_analyzer import QueryAnalyzer
from merchant_copilot.core.domain.query_rewriter import QueryRewriter
from merchant_copilot.core.domain.skill_executor import SkillExecutor
from merchant_copilot.core.domain.task_planner import TaskPlanner
from merchant_copilot.core.interfaces.collaborators import TextGeneratorProtocol
from merchant_copilot.infrastructure.cache.query_cache import QueryCache
from merchant_copilot.infrastructure.catalog.yaml_catalog import CaseLibrary, EntityCatalog
from merchant_copilot.infrastructure.classification.entity_resolver import CatalogEntityResolver
from merchant_copilot.infrastructure.classification.intent_classifier import KeywordIntentClassifier
from merchant_copilot.infrastructure.skills.builtin import build_skill_registry


class PipelineFactory:
    """
    Factory for creating turn pipelines with dependency injection.

    Args:
        config_dir: Directory containing profile YAML files. Relative file
            paths inside a profile are resolved against it.
    """

    def __init__(self, config_dir: str = "configs"):
        self.config_dir = Path(config_dir)
        self.logger = structlog.get_logger().bind(component="pipeline_factory")

    def create_pipeline(
        self,
        profile: str = "dev",
        text_generator: Optional[TextGeneratorProtocol] = None,
        **overrides: Any,
    ) -> TurnPipeline:
        """
        Create a pipeline for a configuration profile.

        Args:
            profile: Profile name (file stem under config_dir)
            text_generator: Explicit text generator; replaces the one the
                profile would build
            **overrides: PipelineSettings fields taking precedence over the
                profile's settings block

        Raises:
            ConfigurationError: If the profile or a referenced file is
                missing or invalid
        """
        config = self.load_profile(profile)
        settings = self.create_settings(config, **overrides)

        self.logger.info(
            "pipeline.creating",
            profile=profile,
            text_generator=config.get("text_generator", "llm"),
            max_concurrency=settings.max_concurrency,
        )

        catalog = EntityCatalog.from_file(self._resolve(config, "catalog_file"))
        library = CaseLibrary.from_file(self._resolve(config, "case_library_file"))
        if text_generator is None:
            text_generator = self._create_text_generator(config)

        return TurnPipeline(
            rewriter=QueryRewriter(confidence_floor=settings.rewrite_confidence_floor),
            boundary_checker=BoundaryChecker(uncertainty_threshold=settings.uncertainty_threshold),
            switch_detector=ContextSwitchDetector(catalog),
            evaluator=ConfidenceEvaluator(
                weights=settings.stage_weights,
                ambiguity_threshold=settings.ambiguity_threshold,
                confirmation_threshold=settings.confirmation_threshold,
                max_rewrite_operations=settings.max_rewrite_operations,
            ),
            validator=OutputValidator(),
            planner=TaskPlanner(),
            executor=SkillExecutor(
                build_skill_registry(library, catalog), max_concurrency=settings.max_concurrency
            ),
            cache=QueryCache(
                ttl=settings.cache_ttl_seconds,
                max_size=settings.cache_max_size,
                cleanup_interval=settings.cache_cleanup_interval_seconds,
            ),
            intent_classifier=KeywordIntentClassifier(),
            entity_resolver=CatalogEntityResolver(catalog),
            catalog=catalog,
            text_generator=text_generator,
            monitor=PerformanceMonitor(),
            context_window=settings.context_message_window,
            analyzer=QueryAnalyzer(catalog),
        )

    @staticmethod
    def create_settings(config: dict, **overrides: Any) -> PipelineSettings:
        values = dict(config.get("settings") or {})
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return PipelineSettings(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid pipeline settings: {e}") from e

    def load_profile(self, profile: str) -> dict:
        profile_path = self.config_dir / f"{profile}.yaml"

        if not profile_path.exists():
            self.logger.error(
                "profile.not_found",
                profile=profile,
                path=str(profile_path),
                hint="Ensure profile YAML exists in configs directory",
            )
            raise ConfigurationError(f"Profile not found: {profile_path}")

        with open(profile_path, "r", encoding="utf-8") as f:
            try:
                config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid profile {profile_path}: {e}") from e

        if not isinstance(config, dict):
            raise ConfigurationError(f"Profile must be a mapping: {profile_path}")

        self.logger.debug("profile.loaded", profile=profile, config_keys=list(config.keys()))
        return config

    def _resolve(self, config: dict, key: str) -> Path:
        value = config.get(key)
        if not value:
            raise ConfigurationError(f"Profile is missing '{key}'")
        path = Path(value)
        return path if path.is_absolute() else self.config_dir / path

    def _create_text_generator(self, config: dict) -> Optional[TextGeneratorProtocol]:
        kind = str(config.get("text_generator", "llm")).lower()
        if kind == "none":
            return None
        if kind != "llm":
            raise ConfigurationError(f"Unknown text generator: {kind}")

        from merchant_copilot.infrastructure.llm.llm_service import LLMService

        llm_config = config.get("llm", {}) or {}
        config_path = Path(llm_config.get("config_path", "llm_config.yaml"))
        if not config_path.is_absolute():
            config_path = self.config_dir / config_path
        return LLMService(config_path=str(config_path), system_prompt=llm_config.get("system_prompt"))

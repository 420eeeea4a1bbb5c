"""
Run context: everything a pipeline component needs, passed explicitly.

Holds the pipeline configuration, settings, the session factory, the shared
keyed locks and registry, and the cancellation flag. Nothing in the pipeline
reaches for module-level state.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import Settings, settings as default_settings
from core.retry import RetryPolicy
from pipeline.conformer import Conformer
from pipeline.dimensions import DimensionBuilder
from pipeline.facts import FactLoader
from pipeline.locks import KeyedLock
from pipeline.quality import QualityValidator
from pipeline.registry import SurrogateKeyRegistry
from pipeline.survivorship import SurvivorshipResolver
from schemas.config import PipelineConfig


@dataclass
class RunContext:
    config: PipelineConfig
    session_factory: async_sessionmaker
    settings: Settings = field(default_factory=lambda: default_settings)
    locks: KeyedLock = field(default_factory=KeyedLock)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    retry_policy: Optional[RetryPolicy] = None
    registry: Optional[SurrogateKeyRegistry] = None

    def __post_init__(self):
        if self.retry_policy is None:
            self.retry_policy = RetryPolicy.from_settings(self.settings)
        if self.registry is None:
            self.registry = SurrogateKeyRegistry(self.session_factory, self.retry_policy, self.locks)

    def cancel(self) -> None:
        """Request cancellation; honoured at the next stage boundary."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def conformer(self) -> Conformer:
        return Conformer(self.config)

    def resolver(self) -> SurvivorshipResolver:
        return SurvivorshipResolver(self.config)

    def dimension_builder(self) -> DimensionBuilder:
        return DimensionBuilder(
            self.session_factory,
            self.config,
            self.registry,
            retry_policy=self.retry_policy,
            locks=self.locks,
        )

    def fact_loader(self) -> FactLoader:
        """A fresh loader per run, so its key cache never outlives the run."""
        return FactLoader(
            self.session_factory,
            self.config,
            dimensions=self.dimension_builder(),
            retry_policy=self.retry_policy,
            batch_size=self.settings.ETL_BATCH_SIZE,
            write_concurrency=self.settings.FACT_WRITE_CONCURRENCY,
        )

    def quality_validator(self) -> QualityValidator:
        return QualityValidator(self.session_factory, retry_policy=self.retry_policy)

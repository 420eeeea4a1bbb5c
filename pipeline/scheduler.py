import logging
from typing import Callable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from models.base import RunMode, utcnow
from pipeline.context import RunContext
from pipeline.runner import PipelineOrchestrator
from pipeline.sources import SourceReader, load_source_manifest

logger = logging.getLogger(__name__)


class PipelineScheduler:
    """Runs the pipeline incrementally on an interval."""

    def __init__(
        self,
        context: RunContext,
        sources_factory: Optional[Callable[[], List[SourceReader]]] = None,
        interval_minutes: Optional[int] = None
    ):
        self.context = context
        self.scheduler = AsyncIOScheduler()
        self.interval_minutes = interval_minutes or context.settings.SCHEDULER_INTERVAL_MINUTES
        self.sources_factory = sources_factory or self._manifest_sources
        self.last_exit_code: Optional[int] = None

    def _manifest_sources(self) -> List[SourceReader]:
        path = self.context.settings.SCHEDULER_SOURCES_PATH
        if not path:
            logger.warning("Scheduler: SCHEDULER_SOURCES_PATH not set, nothing to load")
            return []
        return load_source_manifest(path)

    async def run_pipeline_job(self) -> Optional[int]:
        """Job to run one incremental pipeline run"""
        run_id = f"scheduled-{utcnow():%Y%m%dT%H%M%S%f}"
        logger.info(f"Scheduler: starting run {run_id}")
        try:
            sources = self.sources_factory()
            orchestrator = PipelineOrchestrator(self.context)
            self.last_exit_code = await orchestrator.run(run_id, sources, RunMode.INCREMENTAL)
        except Exception as e:
            logger.error(f"Scheduler: run {run_id} failed - {e}")
            self.last_exit_code = None
            return None

        logger.info(f"Scheduler: run {run_id} finished with exit code {self.last_exit_code}")
        return self.last_exit_code

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_pipeline_job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="pipeline_job",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(f"Pipeline scheduler started (every {self.interval_minutes} minutes)")

    def stop(self):
        """Request shutdown; the scheduler stops on the next event loop iteration."""
        if self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Pipeline scheduler shutdown requested")

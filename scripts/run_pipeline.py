"""
Script to run (or resume) one pipeline run

Usage:
    python scripts/run_pipeline.py --run-id nightly-2024-01-15 \
        --config config/warehouse.yaml --sources config/sources.yaml --mode full

Exit status: 0 success, 1 fatal stage failure, 2 quality-threshold breach.
"""

import argparse
import asyncio
import logging
import os
import sys

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import create_engine, create_session_factory, init_models
from core.exceptions import ETLException
from core.logging import setup_logging
from models.base import RunMode
from pipeline.context import RunContext
from pipeline.runner import EXIT_FAILURE, PipelineOrchestrator
from pipeline.sources import load_source_manifest
from schemas.config import load_pipeline_config

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the warehouse ETL pipeline")
    parser.add_argument("--run-id", required=True, help="Run identifier; reuse a failed run's id to resume it")
    parser.add_argument("--config", default=settings.PIPELINE_CONFIG_PATH, help="Pipeline configuration YAML")
    parser.add_argument("--sources", default=settings.SCHEDULER_SOURCES_PATH, help="Source manifest YAML")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in RunMode],
        default=RunMode.FULL.value,
        help="full reprocesses all of Bronze; incremental only what is new"
    )
    parser.add_argument("--database-url", default=settings.DATABASE_URL)
    return parser.parse_args(argv)


async def run_pipeline(args: argparse.Namespace) -> int:
    """Run ETL for all configured sources"""
    engine = create_engine(args.database_url)
    try:
        config = load_pipeline_config(args.config)
        sources = load_source_manifest(args.sources) if args.sources else []
        if not sources:
            logger.warning("No sources configured; the run will only reprocess Bronze")

        await init_models(engine)

        context = RunContext(config=config, session_factory=create_session_factory(engine))
        orchestrator = PipelineOrchestrator(context)
        return await orchestrator.run(args.run_id, sources, RunMode(args.mode))

    except ETLException as e:
        logger.error(f"Pipeline error: {e.message}", extra={"error_context": e.to_dict()})
        return EXIT_FAILURE
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(run_pipeline(parse_args())))

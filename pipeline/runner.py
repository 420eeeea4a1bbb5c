"""
Pipeline Orchestrator - drives a run through its stages.

This module provides:
- An explicit run state machine (allowed transitions are declared, not
  implied by statement order)
- Run records with per-stage counts, last completed stage and errors
- Resume of a failed run at the stage after its last completed one
- Cancellation honoured between stages
- Exit codes: 0 success, 1 fatal stage failure, 2 quality-threshold breach
"""

import asyncio
import json
from typing import Dict, List, Optional, Set
import logging

from sqlalchemy import select

from core.exceptions import (
    ETLException,
    InvalidStageTransition,
    QualityThresholdBreached,
    RunCancelled,
)
from models.base import PipelineState, RunMode, utcnow
from models.etl_run import PipelineRun
from pipeline.catalog import validate_config
from pipeline.context import RunContext
from pipeline.sources import SourceReader
from pipeline.stages import StageExecutor

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_QUALITY_BREACH = 2

STAGES: List[PipelineState] = [
    PipelineState.LOADING,
    PipelineState.CLEANING,
    PipelineState.RESOLVING,
    PipelineState.KEY_ASSIGNMENT,
    PipelineState.DIMENSION_LOAD,
    PipelineState.FACT_LOAD,
    PipelineState.VALIDATING,
]


class RunStateMachine:
    """
    Allowed run state transitions.

    pending -> loading -> cleaning -> resolving -> key_assignment ->
    dimension_load -> fact_load -> validating -> completed; any active state
    may fail, and a failed run may re-enter any stage (resume).
    """

    TRANSITIONS: Dict[PipelineState, Set[PipelineState]] = {
        PipelineState.PENDING: {PipelineState.LOADING, PipelineState.FAILED},
        PipelineState.LOADING: {PipelineState.CLEANING, PipelineState.FAILED},
        PipelineState.CLEANING: {PipelineState.RESOLVING, PipelineState.FAILED},
        PipelineState.RESOLVING: {PipelineState.KEY_ASSIGNMENT, PipelineState.FAILED},
        PipelineState.KEY_ASSIGNMENT: {PipelineState.DIMENSION_LOAD, PipelineState.FAILED},
        PipelineState.DIMENSION_LOAD: {PipelineState.FACT_LOAD, PipelineState.FAILED},
        PipelineState.FACT_LOAD: {PipelineState.VALIDATING, PipelineState.FAILED},
        PipelineState.VALIDATING: {PipelineState.COMPLETED, PipelineState.FAILED},
        PipelineState.FAILED: set(STAGES),
        PipelineState.COMPLETED: set(),
    }

    def __init__(self, state: PipelineState = PipelineState.PENDING):
        self.state = state

    def can_transition(self, target: PipelineState) -> bool:
        return target in self.TRANSITIONS[self.state]

    def transition(self, target: PipelineState) -> PipelineState:
        if not self.can_transition(target):
            raise InvalidStageTransition(
                f"Cannot move from {self.state.value} to {target.value}",
                context={"from": self.state.value, "to": target.value}
            )
        self.state = target
        return target

    @staticmethod
    def resume_point(last_completed: Optional[PipelineState]) -> PipelineState:
        """First stage to execute for a run whose last completed stage is given."""
        if last_completed is None:
            return STAGES[0]
        index = STAGES.index(last_completed)
        if index + 1 >= len(STAGES):
            # every stage finished but the run never reached completed
            return STAGES[-1]
        return STAGES[index + 1]


class PipelineOrchestrator:
    """
    Run the pipeline for a run id.

    Responsibilities:
    - Create or resume the run record
    - Enforce stage order through RunStateMachine
    - Persist stage counts after every stage
    - Map failures to a terminal state and an exit code
    - Advance source checkpoints only on completion
    """

    def __init__(self, context: RunContext):
        validate_config(context.config)
        self.context = context
        self.stages = StageExecutor(context)

    async def run(
        self,
        run_id: str,
        sources: Optional[List[SourceReader]] = None,
        mode: RunMode = RunMode.FULL
    ) -> int:
        """
        Execute (or resume) a run.

        Args:
            run_id: Caller-chosen run identifier
            sources: Readers for the Loading stage
            mode: full or incremental; a resumed run keeps its recorded mode

        Returns:
            0 success, 1 fatal stage failure, 2 quality-threshold breach
        """
        sources = sources or []
        run = await self._load_run(run_id)

        if run is not None and run.state == PipelineState.COMPLETED:
            logger.info(f"Run {run_id} already completed; not re-executing")
            return run.exit_code if run.exit_code is not None else EXIT_SUCCESS

        if run is None:
            run = await self._create_run(run_id, mode, sources)
            machine = RunStateMachine(PipelineState.PENDING)
        else:
            if run.state != PipelineState.FAILED:
                # an interrupted process left the run mid-stage
                logger.warning(f"Run {run_id} found in state {run.state.value}; treating as failed")
            machine = RunStateMachine(PipelineState.FAILED)
            logger.info(
                f"Resuming run {run_id} after "
                f"{run.last_completed_stage.value if run.last_completed_stage else 'nothing'}"
            )

        mode = run.mode
        start = RunStateMachine.resume_point(run.last_completed_stage)
        run.attempts = (run.attempts or 0) + 1
        run.error_message = None
        run.error_details = None
        await self._save(run)

        current = machine.state
        try:
            for stage in STAGES[STAGES.index(start):]:
                if self.context.cancelled:
                    raise RunCancelled(
                        f"Run {run_id} cancelled before {stage.value}",
                        context={"run_id": run_id, "stage": stage.value}
                    )

                current = machine.transition(stage)
                run.state = stage
                await self._save(run)

                logger.info(f"Run {run_id}: starting {stage.value}")
                counts = await self._execute(stage, run_id, mode, sources)

                run.last_completed_stage = stage
                run.stage_counts = {**(run.stage_counts or {}), stage.value: counts}
                await self._save(run)
                logger.info(f"Run {run_id}: completed {stage.value} {counts}")

            machine.transition(PipelineState.COMPLETED)
            await self.stages.advance_checkpoints(run_id)
            await self._finish(run, PipelineState.COMPLETED, EXIT_SUCCESS)
            logger.info(f"Run {run_id} completed in {run.duration_seconds:.2f}s")
            return EXIT_SUCCESS

        except QualityThresholdBreached as e:
            logger.error(f"Run {run_id} failed quality validation: {e.message}", extra={"error_context": e.to_dict()})
            await self._finish(run, PipelineState.FAILED, EXIT_QUALITY_BREACH, e)
            return EXIT_QUALITY_BREACH

        except ETLException as e:
            logger.error(
                f"Run {run_id} failed at {current.value}: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            await self._finish(run, PipelineState.FAILED, EXIT_FAILURE, e)
            return EXIT_FAILURE

        except asyncio.CancelledError:
            error = RunCancelled(f"Run {run_id} cancelled during {current.value}", context={"run_id": run_id})
            logger.warning(error.message)
            await asyncio.shield(self._finish(run, PipelineState.FAILED, EXIT_FAILURE, error))
            raise

        except Exception as e:
            logger.exception(f"Unexpected error in run {run_id} at {current.value}")
            error = ETLException(
                f"Unexpected error during {current.value}",
                context={"run_id": run_id, "stage": current.value},
                original_exception=e
            )
            await self._finish(run, PipelineState.FAILED, EXIT_FAILURE, error)
            return EXIT_FAILURE

    async def _execute(self, stage: PipelineState, run_id: str, mode: RunMode, sources: List[SourceReader]) -> Dict[str, int]:
        try:
            return await self.stages.execute(stage, run_id, mode, sources)
        except ETLException:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ETLException(
                f"Stage {stage.value} failed",
                context={"run_id": run_id, "stage": stage.value},
                original_exception=e
            )

    # ------------------------------------------------------------------
    # Run records
    # ------------------------------------------------------------------

    async def _load_run(self, run_id: str) -> Optional[PipelineRun]:
        async with self.context.session_factory() as session:
            result = await session.execute(select(PipelineRun).where(PipelineRun.run_id == run_id))
            return result.scalar_one_or_none()

    async def _create_run(self, run_id: str, mode: RunMode, sources: List[SourceReader]) -> PipelineRun:
        run = PipelineRun(
            run_id=run_id,
            mode=mode,
            state=PipelineState.PENDING,
            attempts=0,
            started_at=utcnow(),
            stage_counts={},
            sources=[
                {"source_system": s.source_system, "entity_type": s.entity_type, "reader": repr(s)}
                for s in sources
            ],
            config_snapshot=self.context.config.model_dump(mode="json"),
        )
        async with self.context.session_factory() as session:
            session.add(run)
            await session.commit()
        logger.info(f"Created run {run_id} ({mode.value})")
        return run

    async def _save(self, run: PipelineRun) -> None:
        async def save() -> None:
            async with self.context.session_factory() as session:
                await session.merge(run)
                await session.commit()

        await self.context.retry_policy.run(save, op_name="run.save", context={"run_id": run.run_id})

    async def _finish(
        self,
        run: PipelineRun,
        state: PipelineState,
        exit_code: int,
        error: Optional[ETLException] = None
    ) -> None:
        completed_at = utcnow()
        run.state = state
        run.exit_code = exit_code
        run.completed_at = completed_at
        run.duration_seconds = (completed_at - run.started_at).total_seconds()
        if error is not None:
            run.error_message = error.message
            run.error_details = json.loads(json.dumps(error.to_dict(), default=str))
        await self._save(run)

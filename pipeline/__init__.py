"""
Medallion pipeline: Bronze -> Silver -> Gold star schema.

Modules:
    sources: Source readers (in-memory, CSV) and the CSV source manifest
    conformer: Clean and conform raw rows, quarantining bad ones
    survivorship: Merge records sharing a business key into golden records
    registry: Durable surrogate key registry
    locks: Per-key asyncio mutex
    dimensions: Type-1 dimension upserts, unknown members, calendar dimension
    facts: Fact key resolution and grain upserts
    quality: Post-load quality checks and reports
    rejects: Reject output keyed by run and stage
    catalog: Physical warehouse tables and column roles
    context: RunContext passed to every component
    stages: One method per pipeline stage
    runner: Orchestrator and run state machine
    scheduler: APScheduler integration for interval runs

Architecture:
    Stages run strictly in sequence and each persists its output before the
    next begins:

    loading -> cleaning -> resolving -> key_assignment -> dimension_load ->
    fact_load -> validating

    A failed run resumes after its last completed stage.

Usage:
    from pipeline.context import RunContext
    from pipeline.runner import PipelineOrchestrator
    from pipeline.sources import CSVSource

Example:
    context = RunContext(config=load_pipeline_config("config/warehouse.yaml"),
                         session_factory=get_session_maker())
    orchestrator = PipelineOrchestrator(context)
    status = await orchestrator.run("nightly-2024-01-15", sources)
"""

__all__ = [
    "RunContext",
    "PipelineOrchestrator",
    "RunStateMachine",
    "SourceReader",
    "InMemorySource",
    "CSVSource",
]

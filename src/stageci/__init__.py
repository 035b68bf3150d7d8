from .config import EngineConfig
from .dsl import job, template, rule, matrix, wf, JobBuilder, build
from .errors import (
    StageCIError,
    ManifestLoadError,
    ValidationError,
    CycleError,
    JobFailure,
    InfrastructureFailure,
    CacheUnavailable,
    ArtifactError,
)
from .executor import ExecutionRequest, ExecutionResult, LocalShellExecutor
from .manifest import parse, load_manifest
from .model import Job, PipelineModel, RefKind, RunContext, RunOutcome, JobState, RunStatus
from .runner import Scheduler, RunRegistry, plan_run, run_pipeline

__all__ = [
    "EngineConfig",
    "job", "template", "rule", "matrix", "wf", "JobBuilder", "build",
    "StageCIError", "ManifestLoadError", "ValidationError", "CycleError",
    "JobFailure", "InfrastructureFailure", "CacheUnavailable", "ArtifactError",
    "ExecutionRequest", "ExecutionResult", "LocalShellExecutor",
    "parse", "load_manifest",
    "Job", "PipelineModel", "RefKind", "RunContext", "RunOutcome", "JobState", "RunStatus",
    "Scheduler", "RunRegistry", "plan_run", "run_pipeline",
]

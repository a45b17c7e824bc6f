from .dsl import build, cache, checkout, component, job, JobBuilder, matrix, pipeline, sh, toolchain, wf
from .model import Event, EventKind, Job, JobStatus, PipelineDefinition, RunReport, RunStatus, Step
from .runner import Scheduler, run_pipeline

__all__ = [
    "build",
    "cache",
    "checkout",
    "component",
    "job",
    "JobBuilder",
    "matrix",
    "pipeline",
    "sh",
    "toolchain",
    "wf",
    "Event",
    "EventKind",
    "Job",
    "JobStatus",
    "PipelineDefinition",
    "RunReport",
    "RunStatus",
    "Step",
    "Scheduler",
    "run_pipeline",
]

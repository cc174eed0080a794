from .dsl import action, job, on_pull_request, on_push, pipeline, sh
from .loader import load_pipeline, parse_pipeline
from .model import JobState, PipelineDefinition, Run, RunStatus, TriggerEvent
from .scheduler import Scheduler
from .triggers import TriggerEvaluator

__all__ = [
    "action",
    "job",
    "on_pull_request",
    "on_push",
    "pipeline",
    "sh",
    "load_pipeline",
    "parse_pipeline",
    "JobState",
    "PipelineDefinition",
    "Run",
    "RunStatus",
    "TriggerEvent",
    "Scheduler",
    "TriggerEvaluator",
]

"""stageline: event-driven orchestration of configurable business pipelines."""

from .models import (
    ApprovalRequest,
    EventData,
    PipelineDefinition,
    PipelineInstance,
    ProcessEventResult,
)
from .orchestrator import PipelineOrchestrator, build_orchestrator
from .persistence import get_store
from .steps import (
    ApprovalStep,
    DecisionStep,
    NotificationStep,
    PipelineStep,
    StageStep,
    WaitStep,
)
from .sweep import TimeoutSweeper
from .transports import get_transport
from .worker import EventWorker

__version__ = "0.1.0"
__all__ = [
    "ApprovalRequest",
    "ApprovalStep",
    "DecisionStep",
    "EventData",
    "EventWorker",
    "NotificationStep",
    "PipelineDefinition",
    "PipelineInstance",
    "PipelineOrchestrator",
    "PipelineStep",
    "ProcessEventResult",
    "StageStep",
    "TimeoutSweeper",
    "WaitStep",
    "build_orchestrator",
    "get_store",
    "get_transport",
]

"""flowline: Durable workflow orchestration for agents, APIs and people."""

from .collaborators import AgentRunner, CallableAgentRunner, EventSink, NotificationSink
from .config import FlowlineConfig, load_config
from .contracts import WorkflowDefinition
from .definitions import load_definition, load_definition_file
from .engine import WorkflowEngine
from .models import RunStatus, Task, TaskStatus, WorkflowRun
from .persistence import get_repository
from .scheduler import TimerScheduler

__version__ = "0.1.0"
__all__ = [
    "AgentRunner",
    "CallableAgentRunner",
    "EventSink",
    "NotificationSink",
    "FlowlineConfig",
    "load_config",
    "WorkflowDefinition",
    "load_definition",
    "load_definition_file",
    "WorkflowEngine",
    "RunStatus",
    "Task",
    "TaskStatus",
    "WorkflowRun",
    "get_repository",
    "TimerScheduler",
]

from kennel.tasks.framing import GoalFramer, OpenAIGoalFramer, TemplateGoalFramer
from kennel.tasks.integration import TaskIntegration
from kennel.tasks.manager import TaskEvent, TaskEventType, TaskManager
from kennel.tasks.models import Task, TaskError, TaskResult, TaskSnapshot, TaskStatus
from kennel.tasks.store import TaskStore

__all__ = [
    "GoalFramer",
    "OpenAIGoalFramer",
    "Task",
    "TaskError",
    "TaskEvent",
    "TaskEventType",
    "TaskIntegration",
    "TaskManager",
    "TaskResult",
    "TaskSnapshot",
    "TaskStatus",
    "TaskStore",
    "TemplateGoalFramer",
]

from .dsl import build, call, lit, output, param, scatter, task, TaskBuilder, when, wf, wf_output
from .model import Call, Conditional, Output, Param, Resources, Scatter, TaskSpec, WorkflowDef, WorkflowOutput
from .runner import load_workflow, run_workflow
from .scheduler import RunReport
from .settings import EngineConfig
from .values import ABSENT, File

__all__ = [
    "build", "call", "lit", "output", "param", "scatter", "task", "TaskBuilder", "when", "wf", "wf_output",
    "Call", "Conditional", "Output", "Param", "Resources", "Scatter", "TaskSpec", "WorkflowDef", "WorkflowOutput",
    "load_workflow", "run_workflow", "RunReport", "EngineConfig", "ABSENT", "File",
]

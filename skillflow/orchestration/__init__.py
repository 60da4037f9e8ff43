"""Workflow engine and the plan / dispatch / recover cycle built on it."""

from .graph import END, Computed, EngineLoopLimit, Static, WorkflowEngine
from .planner import PlanError, SkillPlanner
from .recovery import AskUser, AutoPatch, RecoveryEngine, Replan, apply_recovery
from .dispatcher import SkillDispatcher
from .state import AUTOMATION_INTENT, ErrorKind, RecoveryAction, RunStatus, TraceEntry, WorkflowState
from .workflow import AutomationRunner, build_automation_graph

__all__ = [
    "AUTOMATION_INTENT",
    "AskUser",
    "AutoPatch",
    "AutomationRunner",
    "Computed",
    "END",
    "EngineLoopLimit",
    "ErrorKind",
    "PlanError",
    "RecoveryAction",
    "RecoveryEngine",
    "Replan",
    "RunStatus",
    "SkillDispatcher",
    "SkillPlanner",
    "Static",
    "TraceEntry",
    "WorkflowEngine",
    "WorkflowState",
    "apply_recovery",
    "build_automation_graph",
]

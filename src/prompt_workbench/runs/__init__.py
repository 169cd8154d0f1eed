"""Run launching, execution and background dispatch."""

from prompt_workbench.runs.action import RunChainAction
from prompt_workbench.runs.dispatcher import RunDispatcher
from prompt_workbench.runs.launcher import EXECUTE_RUN_TASK, RunLauncher

__all__ = ["EXECUTE_RUN_TASK", "RunChainAction", "RunDispatcher", "RunLauncher"]

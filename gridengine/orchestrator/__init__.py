"""
Orchestrator package.

The per-strategy Runner loop and the Supervisor that owns every Runner.
"""

from gridengine.orchestrator.strategy_runner import CycleAction, CycleResult, RunnerConfig, StrategyRunner
from gridengine.orchestrator.supervisor import StrategySupervisor

__all__ = [
    "CycleAction",
    "CycleResult",
    "RunnerConfig",
    "StrategyRunner",
    "StrategySupervisor",
]

from .engine import ExecutionEngine
from .types import ContainerState, ExecutionRequest, LaunchRequest, ProcessOutcome

__all__ = [
    "ContainerState",
    "ExecutionEngine",
    "ExecutionRequest",
    "LaunchRequest",
    "ProcessOutcome",
]

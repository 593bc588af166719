"""Phase executors and background checks."""

from chainrun.runners.background import BackgroundChecks, CheckResult
from chainrun.runners.executor import AgentCliExecutor, PhaseExecutor, classify, parse_verdict

__all__ = [
    "AgentCliExecutor",
    "BackgroundChecks",
    "CheckResult",
    "PhaseExecutor",
    "classify",
    "parse_verdict",
]

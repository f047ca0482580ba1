from ruletrader.runtime.engine import RuleEngine, RuleOutcome, RuleStatus, TickSummary
from ruletrader.runtime.scheduler import Cadence, EngineScheduler

__all__ = [
    "Cadence",
    "EngineScheduler",
    "RuleEngine",
    "RuleOutcome",
    "RuleStatus",
    "TickSummary",
]

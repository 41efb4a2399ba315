from opsuite.services.triggers.anomaly import AnomalyResult, detect_anomaly, mean, sample_std_deviation
from opsuite.services.triggers.cron import is_due, is_valid_cron, next_fire_time
from opsuite.services.triggers.evaluator import (
    RuleEvaluation,
    SweepSummary,
    evaluate_rule,
    evaluate_tenant_triggers,
    run_trigger_sweep,
)
from opsuite.services.triggers.metrics import resolve_metric_series, resolve_metric_value

__all__ = [
    "AnomalyResult",
    "detect_anomaly",
    "mean",
    "sample_std_deviation",
    "is_due",
    "is_valid_cron",
    "next_fire_time",
    "RuleEvaluation",
    "SweepSummary",
    "evaluate_rule",
    "evaluate_tenant_triggers",
    "run_trigger_sweep",
    "resolve_metric_series",
    "resolve_metric_value",
]

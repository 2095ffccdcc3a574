from controller.src.dsl.conditions import (
    Condition,
    parse_condition,
    evaluate,
    evaluate_condition,
    uses_status_function,
    needs_references,
    CONTEXT_ROOTS,
    STATUS_FUNCTIONS,
)
from controller.src.dsl.cron import CronExpression, validate_cron

__all__ = [
    "Condition",
    "parse_condition",
    "evaluate",
    "evaluate_condition",
    "uses_status_function",
    "needs_references",
    "CONTEXT_ROOTS",
    "STATUS_FUNCTIONS",
    "CronExpression",
    "validate_cron",
]

"""Data model package exports."""

from .datatypes import (
    CleanMessage,
    FailedBatchRecord,
    InvocationResult,
    Item,
    LabelOutcome,
    LabelSpec,
    MailRecord,
    StepStatus,
    TimeWindow,
)

__all__ = [
    "CleanMessage",
    "FailedBatchRecord",
    "InvocationResult",
    "Item",
    "LabelOutcome",
    "LabelSpec",
    "MailRecord",
    "StepStatus",
    "TimeWindow",
]

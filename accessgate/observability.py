"""Outcome counters and failure logging shared by the services."""

from __future__ import annotations

import logging

from prometheus_client import Counter

from .domain.errors import AccessGateError
from .domain.outcomes import EXHAUSTION_OUTCOMES, Outcome

OUTCOMES = Counter(
    "accessgate_outcomes_total",
    "Outcomes returned by the activation and session services.",
    ["operation", "outcome"],
)


def record(operation: str, outcome: Outcome) -> Outcome:
    """Count ``outcome`` for ``operation`` and hand it back to the caller."""
    OUTCOMES.labels(operation=operation, outcome=outcome.value).inc()
    return outcome


def report_failure(log: logging.Logger, operation: str, exc: AccessGateError) -> Outcome:
    """Log an infrastructure failure at the level its category calls for."""
    outcome = exc.outcome
    if outcome in EXHAUSTION_OUTCOMES:
        log.error("%s failed (%s): %s", operation, outcome.value, exc)
    else:
        log.warning("%s failed (%s), caller may retry: %s", operation, outcome.value, exc)
    return record(operation, outcome)

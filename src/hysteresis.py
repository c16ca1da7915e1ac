"""Hysteresis engine module for relay state inference.

Pure calculation functions with no I/O or side effects.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from models import RelayState, Sample


@dataclass(frozen=True)
class InferenceResult:
    """Outcome of one inference over a poll's sample batch."""
    is_on: bool
    effective_at: datetime
    latest_power: Sample


def _first_match(samples: Sequence[Sample], predicate) -> Optional[Sample]:
    for sample in samples:
        if predicate(sample.value):
            return sample
    return None


def infer(
    previous_state: Optional[RelayState],
    samples: Sequence[Sample],
    on_threshold: float,
    off_threshold: float,
) -> InferenceResult:
    """Derive the new relay state from a batch of samples.

    Scans for the first sample crossing the relevant threshold so that the
    reported transition time is the moment of the crossing, even when the
    batch holds several samples since the previous poll.

    Args:
        previous_state: Last known relay state, or None on the first evaluation
        samples: Samples ordered oldest first, must not be empty
        on_threshold: Value at or above which the relay is considered on
        off_threshold: Value at or below which the relay is considered off

    Returns:
        InferenceResult whose effective_at is always one of the sample
        timestamps

    Raises:
        ValueError: If samples is empty
    """
    if not samples:
        raise ValueError("infer requires at least one sample")

    last = samples[-1]

    # First evaluation: any sample at or above the on threshold means on
    if previous_state is None:
        is_on = any(sample.value >= on_threshold for sample in samples)
        return InferenceResult(is_on=is_on, effective_at=last.timestamp, latest_power=last)

    if previous_state.is_on:
        first_off = _first_match(samples, lambda value: value <= off_threshold)
        if first_off is not None:
            return InferenceResult(
                is_on=False, effective_at=first_off.timestamp, latest_power=last
            )
        return InferenceResult(is_on=True, effective_at=last.timestamp, latest_power=last)

    first_on = _first_match(samples, lambda value: value >= on_threshold)
    if first_on is not None:
        return InferenceResult(is_on=True, effective_at=first_on.timestamp, latest_power=last)
    return InferenceResult(is_on=False, effective_at=last.timestamp, latest_power=last)

"""Tests for hysteresis.py module."""

import pytest
from datetime import datetime, timedelta, timezone

from hysteresis import InferenceResult, infer
from models import RelayState, Sample


BASE_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(seconds: int) -> datetime:
    return BASE_TIME + timedelta(seconds=seconds)


def make_samples(*values):
    """Build samples one minute apart starting at BASE_TIME."""
    return [Sample(timestamp=at(60 * i), value=float(v)) for i, v in enumerate(values)]


ON = RelayState(is_on=True, effective_at=at(-60))
OFF = RelayState(is_on=False, effective_at=at(-60))


class TestColdStart:
    """Tests for the first evaluation of a sensor (no previous state)."""

    def test_no_sample_above_threshold_returns_off_at_last_sample(self):
        """samples [3, 7], onThreshold=10 → off at t2"""
        samples = make_samples(3, 7)
        result = infer(None, samples, 10.0, 2.0)
        assert result.is_on is False
        assert result.effective_at == samples[1].timestamp

    def test_any_sample_at_threshold_returns_on_at_last_sample(self):
        """A sample equal to onThreshold anywhere in the batch → on, at last sample"""
        samples = make_samples(10, 0, 0)
        result = infer(None, samples, 10.0, 2.0)
        assert result.is_on is True
        assert result.effective_at == samples[-1].timestamp


class TestPreviouslyOff:
    """Tests for transitions from off."""

    def test_first_crossing_is_used_not_last(self):
        """samples [5, 12, 20], onThreshold=10 → on at t2"""
        samples = make_samples(5, 12, 20)
        result = infer(OFF, samples, 10.0, 2.0)
        assert result.is_on is True
        assert result.effective_at == samples[1].timestamp

    def test_value_equal_to_on_threshold_turns_on(self):
        samples = make_samples(1, 10)
        result = infer(OFF, samples, 10.0, 2.0)
        assert result.is_on is True
        assert result.effective_at == samples[1].timestamp

    def test_no_crossing_reaffirms_off_at_last_sample(self):
        samples = make_samples(1, 9.99, 5)
        result = infer(OFF, samples, 10.0, 2.0)
        assert result.is_on is False
        assert result.effective_at == samples[-1].timestamp

    def test_values_between_thresholds_do_not_turn_on(self):
        """Values in the hysteresis band keep the relay off."""
        samples = make_samples(3, 6, 9)
        result = infer(OFF, samples, 10.0, 2.0)
        assert result.is_on is False


class TestPreviouslyOn:
    """Tests for transitions from on."""

    def test_first_drop_is_used(self):
        samples = make_samples(50, 1, 0, 30)
        result = infer(ON, samples, 10.0, 2.0)
        assert result.is_on is False
        assert result.effective_at == samples[1].timestamp

    def test_value_equal_to_off_threshold_turns_off(self):
        samples = make_samples(50, 2)
        result = infer(ON, samples, 10.0, 2.0)
        assert result.is_on is False
        assert result.effective_at == samples[1].timestamp

    def test_no_drop_reaffirms_on_at_last_sample(self):
        """No sample ≤ offThreshold → on, effective at last sample"""
        samples = make_samples(50, 3, 8, 2.5)
        result = infer(ON, samples, 10.0, 2.0)
        assert result.is_on is True
        assert result.effective_at == samples[-1].timestamp

    def test_values_between_thresholds_keep_on(self):
        samples = make_samples(9, 5, 3)
        result = infer(ON, samples, 10.0, 2.0)
        assert result.is_on is True


class TestResultShape:
    """Tests for properties that hold for every result."""

    @pytest.mark.parametrize("previous", [None, ON, OFF])
    @pytest.mark.parametrize(
        "values",
        [(0,), (100,), (5, 12, 20), (50, 1, 0), (3, 7), (2, 10, 2, 10)],
    )
    def test_effective_at_is_a_sample_timestamp(self, previous, values):
        samples = make_samples(*values)
        result = infer(previous, samples, 10.0, 2.0)
        assert result.effective_at in {s.timestamp for s in samples}

    @pytest.mark.parametrize("previous", [None, ON, OFF])
    def test_latest_power_is_last_sample(self, previous):
        samples = make_samples(5, 12, 20)
        result = infer(previous, samples, 10.0, 2.0)
        assert result.latest_power == samples[-1]

    def test_repeated_calls_give_identical_results(self):
        samples = make_samples(5, 12, 1, 20)
        first = infer(OFF, samples, 10.0, 2.0)
        second = infer(OFF, samples, 10.0, 2.0)
        assert first == second
        assert isinstance(first, InferenceResult)

    def test_empty_batch_raises(self):
        with pytest.raises(ValueError):
            infer(ON, [], 10.0, 2.0)

"""Unit tests for outlier detection and the correction ladder."""

from __future__ import annotations

from dataclasses import replace

import pytest

from helpers import FIXED_NOW, SPIKE_VALUES, at, build_series
from models.errors import ValidationError
from models.records import Reading
from services.merger import merge
from services.outliers import (
    METHOD_INTERPOLATION,
    METHOD_NEXT,
    METHOD_PREVIOUS,
    METHOD_ZERO,
    OutlierCorrector,
    correct,
    detect,
    median,
)


def _corrector(**kwargs) -> OutlierCorrector:
    kwargs.setdefault("threshold_mm", 25)
    return OutlierCorrector(clock=lambda: FIXED_NOW, **kwargs)


def test_detect_flags_only_values_above_threshold() -> None:
    series = build_series([25.0, 24.9, 35.8, 0.0, 45.0, 25.01])

    flags = detect(series, 25)

    assert [flag.index for flag in flags] == [2, 4, 5]
    assert [flag.rainfall_mm for flag in flags] == [35.8, 45.0, 25.01]
    assert flags[0].timestamp == at(2)
    assert flags[0].reason == "Rainfall 35.8mm exceeds threshold of 25mm in 15-minute interval"


def test_detect_reports_the_sampling_interval_it_assumes() -> None:
    flags = detect(build_series([12.0]), 10, sample_interval_minutes=5)

    assert "5-minute interval" in flags[0].reason


def test_detect_does_not_mutate_series() -> None:
    series = build_series(SPIKE_VALUES)
    snapshot = list(series.readings)

    detect(series, 25)

    assert series.readings == snapshot


@pytest.mark.parametrize("threshold", [0, -1, float("nan"), float("inf"), "25"])
def test_detect_rejects_invalid_threshold(threshold) -> None:
    with pytest.raises(ValidationError):
        detect(build_series([1.0]), threshold)


def test_median_averages_middle_pair_for_even_count() -> None:
    assert median([3.0, 1.0, 2.0]) == 2.0
    assert median([4.0, 1.0, 3.0, 2.0]) == 2.5


def test_corrects_literal_scenario_with_local_median() -> None:
    series = build_series(SPIKE_VALUES)
    flags = detect(series, 25)

    result = _corrector().correct(series, flags)

    corrected = result.series.readings
    assert corrected[2].rainfall_mm == pytest.approx(1.5)
    assert corrected[6].rainfall_mm == pytest.approx(1.05)
    assert [c.method for c in result.corrections] == [
        "Local median of 7 nearby values",
        "Local median of 10 nearby values",
    ]
    for index, original in ((2, 35.8), (6, 45.0)):
        assert corrected[index].corrected is True
        assert corrected[index].original_rainfall_mm == original
        assert corrected[index].correction_applied_at == FIXED_NOW


def test_correction_touches_only_flagged_indices() -> None:
    series = build_series(SPIKE_VALUES)

    result = _corrector().correct(series, detect(series, 25))

    for index, (before, after) in enumerate(zip(series.readings, result.series.readings)):
        if index in (2, 6):
            continue
        assert after == before


def test_correction_propagates_delta_onto_totals() -> None:
    series = build_series(SPIKE_VALUES, totals=[100.0] * len(SPIKE_VALUES))

    result = _corrector().correct(series, detect(series, 25))

    totals = [reading.cumulative_mm for reading in result.series.readings]
    assert totals[:2] == [100.0, 100.0]
    assert totals[2:6] == pytest.approx([100.0 - 34.3] * 4)
    assert totals[6:] == pytest.approx([100.0 - 34.3 - 43.95] * 6)


def test_total_adjustment_is_floored_at_zero() -> None:
    values = [0.5, 1.2, 35.8, 2.1]
    series = build_series(values, totals=[1.0, 2.0, 10.0, 40.0])

    result = _corrector().correct(series, detect(series, 25))

    totals = [reading.cumulative_mm for reading in result.series.readings]
    assert totals[:2] == [1.0, 2.0]
    assert totals[2] == 0.0
    assert totals[3] == pytest.approx(40.0 - (35.8 - result.series.readings[2].rainfall_mm))


def test_readings_without_total_are_left_without_total() -> None:
    series = build_series([0.5, 40.0, 0.7], totals=[None, 50.0, None])

    result = _corrector(window=1, min_local_values=2).correct(series, detect(series, 25))

    assert [r.cumulative_mm for r in result.series.readings] == [None, pytest.approx(50.0 - 39.4), None]


def test_falls_back_to_linear_interpolation() -> None:
    series = build_series([1.0, 40.0, 3.0])

    result = _corrector(window=1).correct(series, detect(series, 25))

    assert result.series.readings[1].rainfall_mm == 2.0
    assert result.corrections[0].method == METHOD_INTERPOLATION


def test_interpolation_scans_past_window_and_other_outliers() -> None:
    series = build_series([0.4, 30.0, 50.0, 26.0, 0.8])

    result = _corrector(window=1).correct(series, detect(series, 25))

    assert result.series.readings[2].rainfall_mm == pytest.approx(0.6)
    assert result.corrections[1].method == METHOD_INTERPOLATION


def test_falls_back_to_previous_valid_value() -> None:
    series = build_series([2.0, 40.0, 50.0])

    result = _corrector().correct(series, detect(series, 25))

    assert [r.rainfall_mm for r in result.series.readings] == [2.0, 2.0, 2.0]
    assert {c.method for c in result.corrections} == {METHOD_PREVIOUS}


def test_falls_back_to_next_valid_value() -> None:
    series = build_series([40.0, 3.0])

    result = _corrector().correct(series, detect(series, 25))

    assert result.series.readings[0].rainfall_mm == 3.0
    assert result.corrections[0].method == METHOD_NEXT


def test_all_outlier_series_falls_back_to_zero() -> None:
    series = build_series([30.0, 40.0, 99.0])

    result = _corrector().correct(series, detect(series, 25))

    assert [r.rainfall_mm for r in result.series.readings] == [0.0, 0.0, 0.0]
    assert {c.method for c in result.corrections} == {METHOD_ZERO}


def test_corrections_do_not_depend_on_flag_order() -> None:
    series = build_series(SPIKE_VALUES + [60.0, 0.3, 27.0, 0.1])
    flags = detect(series, 25)

    forward = _corrector().correct(series, flags)
    backward = _corrector().correct(series, list(reversed(flags)))

    assert backward.series == forward.series
    assert backward.corrections == forward.corrections


def test_replacements_read_only_the_original_series() -> None:
    series = build_series(SPIKE_VALUES)
    corrector = _corrector()

    in_reverse = {index: corrector.replacement_for(series.readings, index) for index in (6, 2)}
    in_order = {index: corrector.replacement_for(series.readings, index) for index in (2, 6)}

    assert in_reverse == in_order


def test_duplicate_flags_produce_a_single_correction() -> None:
    series = build_series(SPIKE_VALUES, totals=[100.0] * len(SPIKE_VALUES))
    flags = detect(series, 25)

    result = _corrector().correct(series, flags + flags)

    assert len(result.corrections) == 2
    assert result.series.readings[2].cumulative_mm == pytest.approx(100.0 - 34.3)


def test_flag_outside_series_is_rejected() -> None:
    series = build_series([1.0, 40.0])
    flags = detect(build_series([1.0, 2.0, 3.0, 40.0]), 25)

    with pytest.raises(ValidationError):
        _corrector().correct(series, flags)


def test_correct_without_flags_returns_series_unchanged() -> None:
    series = build_series([0.2, 0.4])

    result = correct(series, [])

    assert result.series is series
    assert result.corrections == []


@pytest.mark.parametrize("steps", [[2, 0, 1], [0, 1, 1]])
def test_correct_rejects_series_out_of_timestamp_order(steps) -> None:
    series = build_series([0.3, 30.0, 0.1])
    series.readings = [
        replace(reading, timestamp=at(step)) for reading, step in zip(series.readings, steps)
    ]

    with pytest.raises(ValidationError, match="ascending timestamp order"):
        _corrector().correct(series, detect(series, 25))
    with pytest.raises(ValidationError):
        correct(series, [])


def test_corrected_output_of_merged_series_is_sorted() -> None:
    shuffled = build_series([])
    incoming = [
        Reading(timestamp=at(step), rainfall_mm=value)
        for step, value in ((2, 0.3), (0, 30.0), (1, 0.1))
    ]
    series = merge(shuffled, incoming)

    result = _corrector().correct(series, detect(series, 25))

    assert [r.timestamp for r in result.series.readings] == [at(0), at(1), at(2)]
    assert result.series.readings[0].rainfall_mm == 0.1
    assert result.corrections[0].method == METHOD_NEXT

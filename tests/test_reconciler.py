from __future__ import annotations

import logging

import pytest

from app.schemas import StationHistory
from datastore.station_registry import StationInfo, StationRegistry
from helpers import FIXED_NOW, SPIKE_VALUES, at, build_series, wire
from models.errors import ValidationError
from models.records import StationSeries
from services.reconciler import ReconcilerConfig, ReconciliationPipeline, reconcile
from services.reporting import build_batch_report, to_response


def _pipeline(**config) -> ReconciliationPipeline:
    return ReconciliationPipeline(config=ReconcilerConfig(**config), clock=lambda: FIXED_NOW)


def test_clean_series_round_trips_unchanged() -> None:
    existing = build_series([0.2, 0.4, 1.1, 0.0])

    result = _pipeline().reconcile(existing, [])

    assert result.changed is False
    assert result.series.outlier_detection is None
    assert result.series.last_updated is None
    assert (
        StationHistory.from_series(result.series).to_payload()
        == StationHistory.from_series(existing).to_payload()
    )


def test_reconcile_corrects_spikes_and_records_summary() -> None:
    existing = build_series(SPIKE_VALUES[:6])
    incoming = [wire(step, value) for step, value in enumerate(SPIKE_VALUES) if step >= 6]

    result = _pipeline().reconcile(existing, incoming)

    readings = result.series.readings
    assert [r.timestamp for r in readings] == [at(step) for step in range(len(SPIKE_VALUES))]
    assert readings[2].rainfall_mm == pytest.approx(1.5)
    assert readings[6].rainfall_mm == pytest.approx(1.05)
    assert result.series.last_updated == FIXED_NOW
    assert result.series.outlier_detection == {
        "detectedAt": "2025-09-21T06:30:00.000Z",
        "threshold": 25.0,
        "outliersFound": 2,
        "correctionsMade": 2,
        "correctionMethod": "intelligent_interpolation",
    }
    assert result.report.added == 6
    assert result.changed is True


def test_persisted_record_uses_wire_field_names() -> None:
    result = _pipeline().reconcile(build_series(SPIKE_VALUES), [])

    payload = StationHistory.from_series(result.series).to_payload()

    assert payload["station"] == "031555"
    assert payload["stationName"] == "Exmouth"
    assert payload["lastUpdated"] == "2025-09-21T06:30:00.000Z"
    assert payload["outlierDetection"]["outliersFound"] == 2
    spike = payload["data"][2]
    assert spike == {
        "date": "2025-09-20",
        "time": "00:30",
        "rainfall_mm": 1.5,
        "corrected": True,
        "original_rainfall_mm": 35.8,
        "correction_reason": "Local median of 7 nearby values",
        "correction_timestamp": "2025-09-21T06:30:00.000Z",
    }
    assert "corrected" not in payload["data"][0]


def test_threshold_argument_overrides_config() -> None:
    existing = build_series([0.2, 12.0, 0.3, 0.1])

    result = _pipeline().reconcile(existing, [], threshold_mm=10)

    assert result.report.outliers_found == 1
    assert result.series.outlier_detection["threshold"] == 10.0


def test_invalid_threshold_is_rejected() -> None:
    with pytest.raises(ValidationError):
        _pipeline().reconcile(build_series([1.0]), [], threshold_mm=-2)


def test_merge_only_change_refreshes_last_updated_without_summary() -> None:
    existing = build_series([0.2, 0.4])

    result = _pipeline().reconcile(existing, [wire(2, 0.6)])

    assert result.series.last_updated == FIXED_NOW
    assert result.series.outlier_detection is None
    assert result.report.flags == []


def test_previous_summary_survives_a_clean_run() -> None:
    existing = build_series([0.2, 0.4])
    existing.outlier_detection = {"detectedAt": "2025-09-01T00:00:00.000Z", "outliersFound": 1}

    result = _pipeline().reconcile(existing, [])

    assert result.series.outlier_detection == existing.outlier_detection


def test_registry_fills_missing_metadata_only() -> None:
    registry = StationRegistry(
        {
            "031555": StationInfo(station_id="031555", name="Exmouth Gauge", region="Devon", source="EA"),
            "E1234": StationInfo(station_id="E1234", name="Brecon", region="Wales", source="NRW"),
        }
    )
    named = build_series([0.1], station_id="031555")
    unnamed = StationSeries(station_id="E1234")

    named_result = reconcile(named, [], registry=registry, clock=lambda: FIXED_NOW)
    unnamed_result = reconcile(unnamed, [wire(0, 0.1)], registry=registry, clock=lambda: FIXED_NOW)

    assert named_result.series.station_name == "Exmouth"
    assert named_result.series.region == "South West"
    assert unnamed_result.series.station_name == "Brecon"
    assert unnamed_result.series.region == "Wales"
    assert unnamed_result.series.source == "NRW"


def test_alert_is_logged_when_outlier_count_exceeds_threshold(caplog) -> None:
    existing = build_series([30.0] * 6 + [0.1])

    with caplog.at_level(logging.INFO, logger="services.reconciler"):
        result = _pipeline(alert_threshold=5).reconcile(existing, [])

    assert result.report.outliers_found == 6
    warnings = [record for record in caplog.records if record.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert warnings[0].station_id == "031555"
    assert "exceeds alert threshold 5" in warnings[0].getMessage()
    assert sum(1 for record in caplog.records if record.getMessage().startswith("Corrected")) == 6


def test_no_alert_at_threshold(caplog) -> None:
    existing = build_series([30.0] * 5 + [0.1])

    with caplog.at_level(logging.WARNING, logger="services.reconciler"):
        _pipeline(alert_threshold=5).reconcile(existing, [])

    assert not caplog.records


def test_existing_input_is_not_mutated() -> None:
    existing = build_series(SPIKE_VALUES)
    snapshot = list(existing.readings)

    _pipeline().reconcile(existing, [wire(20, 0.4)])

    assert existing.readings == snapshot
    assert existing.last_updated is None


def test_responses_and_batch_report_summarise_results() -> None:
    spiky = _pipeline().reconcile(build_series(SPIKE_VALUES, station_id="A"), [])
    clean = _pipeline().reconcile(build_series([0.1, 0.2], station_id="B"), [wire(2, 0.3)])

    response = to_response("A", spiky)
    report = build_batch_report(
        {"A": spiky, "B": clean}, 25.0, failures={"C": "broken"}, generated_at=FIXED_NOW
    )

    assert response.record_count == len(SPIKE_VALUES)
    assert response.outliers_found == 2
    assert [c.corrected_mm for c in response.corrections] == pytest.approx([1.5, 1.05])
    body = report.model_dump(mode="json", by_alias=True)
    assert body["summary"] == {
        "stationsProcessed": 3,
        "stationsWithOutliers": 1,
        "stationsFailed": 1,
        "totalOutliersFound": 2,
        "totalCorrections": 2,
    }
    assert [detail["station"] for detail in body["stationDetails"]] == ["A"]
    assert body["stationDetails"][0]["corrections"][0]["originalValue"] == 35.8
    assert body["failures"] == {"C": "broken"}

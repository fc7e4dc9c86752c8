import json

import pytest

from datastore.station_registry import StationRegistry
from models.errors import ValidationError


def test_registry_reads_metadata_document(tmp_path) -> None:
    path = tmp_path / "stations-metadata.json"
    path.write_text(
        json.dumps(
            {
                "stations": {
                    "031555": {
                        "name": "Exmouth",
                        "region": "South West",
                        "provider": "EA",
                        "coordinates": {"lat": 50.62, "lng": -3.41},
                    },
                    "nrw-1": {"stationId": "E1234", "stationName": "Brecon"},
                }
            }
        )
    )

    registry = StationRegistry.from_file(path)

    assert list(registry) == ["031555", "E1234"]
    assert len(registry) == 2
    info = registry.get("031555")
    assert info.source == "EA"
    assert (info.latitude, info.longitude) == (50.62, -3.41)
    assert registry.get("E1234").name == "Brecon"
    assert "nrw-1" not in registry
    assert registry.get("missing") is None


@pytest.mark.parametrize(
    "payload",
    [{}, {"stations": []}, {"stations": {"a": "Exmouth"}}],
)
def test_registry_rejects_malformed_documents(payload) -> None:
    with pytest.raises(ValidationError):
        StationRegistry.from_mapping(payload)


def test_registry_rejects_invalid_json(tmp_path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("[")

    with pytest.raises(ValidationError):
        StationRegistry.from_file(path)

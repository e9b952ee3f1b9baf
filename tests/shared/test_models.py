# tests/shared/test_models.py
"""
Тесты для моделей сообщений протокола.
"""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from gig_rides.shared.models import (
    AcceptDM,
    DriverAvailability,
    Location,
    RideRequest,
    RideStatus,
    RideType,
)


class TestLocation:
    """Тесты для модели Location."""

    def test_valid(self) -> None:
        """Проверяет создание точки."""
        location = Location(latitude=50.45, longitude=30.52)
        assert location.latitude == 50.45

    @pytest.mark.parametrize("lat,lon", [(91, 0), (-91, 0), (0, 181), (0, -181)])
    def test_out_of_range(self, lat: float, lon: float) -> None:
        """Проверяет отказ при координатах вне диапазона."""
        with pytest.raises(ValidationError):
            Location(latitude=lat, longitude=lon)


class TestRideRequest:
    """Тесты для модели RideRequest."""

    def test_defaults(self) -> None:
        """Проверяет значения по умолчанию."""
        request = RideRequest(geohash="w21z4")
        assert request.status is RideStatus.OPEN
        assert request.matched_driver_pubkey is None
        assert request.ride_type is RideType.PERSON
        assert len(request.id) == 32

    def test_unique_ids(self) -> None:
        """Проверяет, что id генерируется заново для каждого запроса."""
        assert RideRequest(geohash="a").id != RideRequest(geohash="a").id

    def test_content_uses_camel_case(self) -> None:
        """Проверяет формат content на проводе."""
        request = RideRequest(
            id="r1",
            geohash="w21z4",
            start_location=Location(latitude=1.0, longitude=2.0),
            details={"seats": "2"},
        )
        content = json.loads(request.to_content())

        assert content["id"] == "r1"
        assert content["status"] == "open"
        assert content["matchedDriverPubkey"] is None
        assert content["rideType"] == "person"
        assert content["startLocation"] == {"latitude": 1.0, "longitude": 2.0}
        assert content["details"] == {"seats": "2"}

    def test_from_content_accepts_both_names(self) -> None:
        """Разбор принимает и алиасы, и имена полей, лишние ключи игнорируются."""
        by_alias = RideRequest.from_content(json.dumps({
            "id": "r1", "geohash": "w21z4", "status": "taken", "matchedDriverPubkey": "d1", "extra": 1,
        }))
        by_name = RideRequest.from_content(json.dumps({
            "id": "r1", "geohash": "w21z4", "status": "taken", "matched_driver_pubkey": "d1",
        }))
        assert by_alias.matched_driver_pubkey == by_name.matched_driver_pubkey == "d1"

    def test_from_content_rejects_garbage(self) -> None:
        """Проверяет отказ при некорректном content."""
        for content in ("", "null", "{", json.dumps({"id": "r1", "geohash": "x", "status": "lost"})):
            with pytest.raises(ValidationError):
                RideRequest.from_content(content)

    def test_from_content_requires_id_and_status(self) -> None:
        """С провода id и status обязательны, локально — нет."""
        for payload in ({"geohash": "w21z4", "status": "open"}, {"id": "r1", "geohash": "w21z4"}):
            with pytest.raises(ValidationError):
                RideRequest.from_content(json.dumps(payload))

        local = RideRequest.model_validate({"geohash": "w21z4"})
        assert local.id
        assert local.status is RideStatus.OPEN

    def test_with_status_returns_copy(self) -> None:
        """with_status не меняет исходный запрос."""
        request = RideRequest(id="r1", geohash="w21z4")
        taken = request.with_status(RideStatus.TAKEN, "d1")

        assert taken.id == "r1"
        assert taken.status is RideStatus.TAKEN
        assert taken.matched_driver_pubkey == "d1"
        assert request.status is RideStatus.OPEN

    def test_status_terminal_flag(self) -> None:
        """Проверяет признак конечного статуса."""
        assert RideStatus.OPEN.is_terminal is False
        assert RideStatus.TAKEN.is_terminal is True
        assert RideStatus.CANCELLED.is_terminal is True


class TestDriverAvailability:
    """Тесты для модели DriverAvailability."""

    def test_content_excludes_pubkey(self) -> None:
        """pubkey не попадает в content."""
        availability = DriverAvailability(
            pubkey="p" * 64, geohash="w21z4", location=Location(latitude=1.0, longitude=2.0)
        )
        content = json.loads(availability.to_content())
        assert "pubkey" not in content
        assert content["geohash"] == "w21z4"

    def test_from_content_sets_signer(self) -> None:
        """pubkey при разборе берётся из подписи."""
        content = json.dumps({"geohash": "w21z4", "location": {"latitude": 1.0, "longitude": 2.0}})
        availability = DriverAvailability.from_content(content, "s" * 64)
        assert availability.pubkey == "s" * 64
        assert availability.location.longitude == 2.0


class TestAcceptDM:
    """Тесты для модели AcceptDM."""

    def test_payload(self) -> None:
        """Проверяет полезную нагрузку сообщения."""
        dm = AcceptDM(request_id="r1", driver_pubkey="d1")
        assert dm.to_payload() == {"type": "accept", "requestId": "r1", "driverPubkey": "d1"}

    def test_parse_payload(self) -> None:
        """Проверяет разбор входящего сообщения."""
        dm = AcceptDM.model_validate({"type": "accept", "requestId": "r1", "driverPubkey": "d1"})
        assert dm.request_id == "r1"

    @pytest.mark.parametrize("payload", [
        {"type": "reject", "requestId": "r1", "driverPubkey": "d1"},
        {"type": "accept", "requestId": "", "driverPubkey": "d1"},
        {"type": "accept", "driverPubkey": "d1"},
        {"type": "accept", "requestId": "r1"},
        "accept",
        None,
    ])
    def test_rejects_other_shapes(self, payload) -> None:
        """Любая другая форма сообщения отклоняется."""
        with pytest.raises(ValidationError):
            AcceptDM.model_validate(payload)

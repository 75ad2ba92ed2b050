import pytest
import requests
from fastapi.testclient import TestClient

from finstat.config import Settings
from finstat.main import create_app
from finstat.services.location import (
    GeocodingError,
    LocationResolver,
    NominatimGeocoder,
    format_coordinates,
    maps_link,
)

GEO_SECRET = "geocoding-test-signing-key-0123456789abcdef012345"


class FakeGeocoder:
    def __init__(self, address: str = "1 Main St, Springfield") -> None:
        self.address = address
        self.calls: list[tuple[float, float]] = []

    def reverse(self, latitude: float, longitude: float) -> str:
        self.calls.append((latitude, longitude))
        return self.address


class FailingGeocoder:
    def reverse(self, latitude: float, longitude: float) -> str:
        raise GeocodingError("service down")


class FakeResponse:
    def __init__(self, payload, status_code: int = 200) -> None:
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeSession:
    def __init__(self, response=None, exc: Exception | None = None) -> None:
        self.response = response
        self.exc = exc
        self.requests: list[dict] = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.requests.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        return self.response


def test_format_helpers() -> None:
    assert format_coordinates(52.52, 13.405) == "52.520000, 13.405000"
    assert maps_link(52.52, 13.405) == "https://www.google.com/maps?q=52.52,13.405"


def test_resolver_uses_geocoder() -> None:
    geocoder = FakeGeocoder("Alexanderplatz, Berlin")
    data = LocationResolver(geocoder).resolve(52.52, 13.405)
    assert data.address == "Alexanderplatz, Berlin"
    assert data.maps_link == maps_link(52.52, 13.405)
    assert geocoder.calls == [(52.52, 13.405)]


def test_resolver_falls_back_to_coordinates() -> None:
    assert LocationResolver(FailingGeocoder()).resolve(1.0, 2.0).address == "1.000000, 2.000000"
    assert LocationResolver().resolve(1.0, 2.0).address == "1.000000, 2.000000"


def test_nominatim_sends_expected_request() -> None:
    session = FakeSession(FakeResponse({"display_name": "Somewhere"}))
    geocoder = NominatimGeocoder("https://geo.example/reverse", "FinStat-Test/1.0", timeout=3.0, session=session)
    assert geocoder.reverse(10.0, 20.0) == "Somewhere"
    sent = session.requests[0]
    assert sent["url"] == "https://geo.example/reverse"
    assert sent["params"]["lat"] == 10.0
    assert sent["params"]["lon"] == 20.0
    assert sent["params"]["format"] == "json"
    assert sent["headers"] == {"User-Agent": "FinStat-Test/1.0"}
    assert sent["timeout"] == 3.0


def test_nominatim_without_display_name_returns_coordinates() -> None:
    geocoder = NominatimGeocoder("https://geo.example/reverse", "ua", session=FakeSession(FakeResponse({})))
    assert geocoder.reverse(1.0, 2.0) == "1.000000, 2.000000"


@pytest.mark.parametrize(
    "session",
    [
        FakeSession(exc=requests.Timeout("slow")),
        FakeSession(FakeResponse({}, status_code=503)),
        FakeSession(FakeResponse({"error": "Unable to geocode"})),
        FakeSession(FakeResponse(ValueError("not json"))),
        FakeSession(FakeResponse(["unexpected"])),
    ],
)
def test_nominatim_failures_raise_geocoding_error(session) -> None:
    geocoder = NominatimGeocoder("https://geo.example/reverse", "ua", session=session)
    with pytest.raises(GeocodingError):
        geocoder.reverse(1.0, 2.0)


def test_reverse_endpoint(client, headers) -> None:
    res = client.get("/api/location/reverse", params={"latitude": 48.8584, "longitude": 2.2945}, headers=headers)
    assert res.status_code == 200
    assert res.json() == {
        "latitude": 48.8584,
        "longitude": 2.2945,
        "address": "48.858400, 2.294500",
        "mapsLink": "https://www.google.com/maps?q=48.8584,2.2945",
    }

    out_of_range = client.get("/api/location/reverse", params={"latitude": 95, "longitude": 0}, headers=headers)
    assert out_of_range.status_code == 400
    assert client.get("/api/location/reverse", params={"latitude": 1, "longitude": 1}).status_code == 401


def _geocoding_client(geocoder) -> TestClient:
    settings = Settings(jwt_secret=GEO_SECRET, bcrypt_rounds=4, geocoding_enabled=True)
    return TestClient(create_app(settings, geocoder=geocoder))


def _signup(client: TestClient) -> dict[str, str]:
    res = client.post(
        "/api/auth/register",
        json={"email": "geo@x.com", "fullName": "Geo", "password": "secret1", "confirmPassword": "secret1"},
    )
    return {"Authorization": f"Bearer {res.json()['token']}"}


def test_transaction_location_filled_from_coordinates() -> None:
    geocoder = FakeGeocoder("Louvre, Paris")
    client = _geocoding_client(geocoder)
    headers = _signup(client)
    base = {"account": "Main", "date": "2024-05-01", "name": "Museum", "debit": 17, "credit": 0, "type": "Expense"}

    filled = client.post("/api/transactions", json={**base, "latitude": 48.86, "longitude": 2.33}, headers=headers)
    assert filled.status_code == 201
    assert filled.json()["location"] == "Louvre, Paris"

    explicit = client.post(
        "/api/transactions", json={**base, "latitude": 48.86, "longitude": 2.33, "location": "My note"}, headers=headers
    )
    assert explicit.json()["location"] == "My note"
    assert geocoder.calls == [(48.86, 2.33)]


def test_transaction_location_falls_back_when_geocoder_fails() -> None:
    client = _geocoding_client(FailingGeocoder())
    headers = _signup(client)
    res = client.post(
        "/api/transactions",
        json={
            "account": "Main",
            "date": "2024-05-01",
            "name": "Somewhere",
            "debit": 1,
            "credit": 0,
            "type": "Expense",
            "latitude": 1.5,
            "longitude": -2.25,
        },
        headers=headers,
    )
    assert res.status_code == 201
    assert res.json()["location"] == "1.500000, -2.250000"


def test_location_left_alone_when_geocoding_disabled(client, headers) -> None:
    res = client.post(
        "/api/transactions",
        json={
            "account": "Main",
            "date": "2024-05-01",
            "name": "Somewhere",
            "debit": 1,
            "credit": 0,
            "type": "Expense",
            "latitude": 1.5,
            "longitude": -2.25,
        },
        headers=headers,
    )
    assert res.json()["location"] is None
    assert res.json()["latitude"] == 1.5

import logging
from dataclasses import dataclass
from typing import Protocol

import requests

logger = logging.getLogger(__name__)


class GeocodingError(Exception):
    pass


class Geocoder(Protocol):
    def reverse(self, latitude: float, longitude: float) -> str: ...


@dataclass(frozen=True)
class LocationData:
    latitude: float
    longitude: float
    address: str
    maps_link: str


def format_coordinates(latitude: float, longitude: float) -> str:
    return f"{latitude:.6f}, {longitude:.6f}"


def maps_link(latitude: float, longitude: float) -> str:
    return f"https://www.google.com/maps?q={latitude},{longitude}"


class NominatimGeocoder:
    """Reverse geocoding against an OpenStreetMap Nominatim endpoint."""

    def __init__(self, url: str, user_agent: str, timeout: float = 10.0, session: requests.Session | None = None) -> None:
        self.url = url
        self.user_agent = user_agent
        self.timeout = timeout
        self.session = session or requests.Session()

    def reverse(self, latitude: float, longitude: float) -> str:
        params = {"format": "json", "lat": latitude, "lon": longitude, "zoom": 18, "addressdetails": 1}
        try:
            resp = self.session.get(
                self.url, params=params, headers={"User-Agent": self.user_agent}, timeout=self.timeout
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise GeocodingError(f"reverse geocoding failed: {exc.__class__.__name__}") from exc
        if not isinstance(data, dict):
            raise GeocodingError("unexpected geocoding payload")
        if data.get("error"):
            raise GeocodingError(str(data["error"]))
        return data.get("display_name") or format_coordinates(latitude, longitude)


class LocationResolver:
    """Turns coordinates into a human readable address, best effort.

    ``resolve`` never raises: without a geocoder, or when the lookup fails,
    the address is the raw coordinate pair.
    """

    def __init__(self, geocoder: Geocoder | None = None) -> None:
        self.geocoder = geocoder

    def address_for(self, latitude: float, longitude: float) -> str:
        if self.geocoder is None:
            return format_coordinates(latitude, longitude)
        try:
            return self.geocoder.reverse(latitude, longitude)
        except Exception as exc:
            logger.warning("falling back to raw coordinates: %s", exc)
            return format_coordinates(latitude, longitude)

    def resolve(self, latitude: float, longitude: float) -> LocationData:
        return LocationData(
            latitude=latitude,
            longitude=longitude,
            address=self.address_for(latitude, longitude),
            maps_link=maps_link(latitude, longitude),
        )

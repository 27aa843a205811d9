"""Tomorrow.io timeline forecast client.

Only the short-range forecast used to veto self-powering is fetched; there is
no caching since each run is a one-shot decision.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from typing import Iterable, Mapping, Sequence

import requests

from deadline import Deadline, request_scope
from errors import GridletError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.tomorrow.io"

# Timestep names the timelines endpoint accepts, in minutes, for picking the
# most granular timeline out of a multi-timestep response.
_TIMESTEP_MINUTES = {
    "current": 0,
    "1m": 1,
    "5m": 5,
    "15m": 15,
    "30m": 30,
    "1h": 60,
    "1d": 1440,
}


class ForecastError(GridletError):
    """Forecast request failed or returned something we can't interpret."""


class WeatherCode(IntEnum):
    """Weather codes from https://docs.tomorrow.io/reference/data-layers-weather-codes"""
    UNKNOWN = 0
    CLEAR_SUNNY = 1000
    CLOUDY = 1001
    MOSTLY_CLEAR = 1100
    PARTLY_CLOUDY = 1101
    MOSTLY_CLOUDY = 1102
    FOG = 2000
    LIGHT_FOG = 2100
    DRIZZLE = 4000
    RAIN = 4001
    LIGHT_RAIN = 4200
    HEAVY_RAIN = 4201
    SNOW = 5000
    FLURRIES = 5001
    LIGHT_SNOW = 5100
    HEAVY_SNOW = 5101
    FREEZING_DRIZZLE = 6000
    FREEZING_RAIN = 6001
    LIGHT_FREEZING_RAIN = 6200
    HEAVY_FREEZING_RAIN = 6201
    ICE_PELLETS = 7000
    HEAVY_ICE_PELLETS = 7101
    LIGHT_ICE_PELLETS = 7102
    THUNDERSTORM = 8000


# Conditions where an outage is likely enough that the battery should stay full
SEVERE_WEATHER_CODES = frozenset({
    WeatherCode.HEAVY_SNOW,
    WeatherCode.FREEZING_DRIZZLE,
    WeatherCode.FREEZING_RAIN,
    WeatherCode.LIGHT_FREEZING_RAIN,
    WeatherCode.HEAVY_FREEZING_RAIN,
    WeatherCode.ICE_PELLETS,
    WeatherCode.HEAVY_ICE_PELLETS,
    WeatherCode.LIGHT_ICE_PELLETS,
    WeatherCode.THUNDERSTORM,
})


@dataclass(frozen=True)
class ForecastInterval:
    timestamp: datetime
    weather_code: WeatherCode
    wind_gust_ms: float
    temperature_c: float | None = None


def parse_weather_code(value) -> WeatherCode:
    """Map a raw API value onto WeatherCode; anything unrecognised is fatal."""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ForecastError(f"Unexpected weather code value {value!r}")
    try:
        return WeatherCode(value)
    except ValueError as e:
        raise ForecastError(f"Unexpected weather code value {value!r}") from e


def parse_location(location: str) -> tuple[float, float]:
    """Parse a 'lat,lng' string such as '29.935,-90.109'."""
    parts = [p.strip() for p in location.split(",")]
    if len(parts) != 2:
        raise ValueError(f"Location must be 'lat,lng', got {location!r}")
    lat, lng = float(parts[0]), float(parts[1])
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lng <= 180.0:
        raise ValueError(f"Location out of range: {location!r}")
    return lat, lng


def _parse_timestamp(raw: str) -> datetime:
    # Python < 3.11 fromisoformat() rejects the trailing 'Z'
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return datetime.fromisoformat(raw)


def _parse_interval(raw: Mapping) -> ForecastInterval:
    values = raw["values"]
    temperature = values.get("temperature")
    return ForecastInterval(
        timestamp=_parse_timestamp(raw["startTime"]),
        weather_code=parse_weather_code(values["weatherCode"]),
        wind_gust_ms=float(values["windGust"]),
        temperature_c=float(temperature) if temperature is not None else None,
    )


def parse_timelines(body: Mapping) -> list[ForecastInterval]:
    """Extract the most granular timeline's intervals, oldest first."""
    try:
        timelines = body["data"]["timelines"]
    except (KeyError, TypeError) as e:
        raise ForecastError(f"Forecast response has no data.timelines: {body!r}") from e
    if not timelines:
        raise ForecastError("Forecast response contains no timelines")

    try:
        timeline = min(
            timelines,
            key=lambda t: _TIMESTEP_MINUTES.get(t.get("timestep"), float("inf")),
        )
    except (AttributeError, TypeError) as e:
        raise ForecastError(f"Malformed timelines in forecast response: {timelines!r}") from e
    try:
        intervals = [_parse_interval(i) for i in timeline.get("intervals", [])]
    except (KeyError, TypeError, ValueError) as e:
        raise ForecastError(
            f"Malformed interval in {timeline.get('timestep')!r} timeline: {e!r}"
        ) from e
    return sorted(intervals, key=lambda i: i.timestamp)


def get_forecast(api_key: str, location: Sequence[float], fields: Iterable[str],
                 extra_params: Mapping[str, str] | None = None,
                 deadline: Deadline | None = None,
                 base_url: str = DEFAULT_BASE_URL) -> list[ForecastInterval]:
    """Fetch a forecast timeline for `location` ([lat, lng])."""
    params = [
        ("apikey", api_key),
        ("location", ",".join(str(v) for v in location)),
        ("fields", ",".join(fields or [])),
    ]
    params.extend((extra_params or {}).items())

    url = f"{base_url.rstrip('/')}/v4/timelines"
    with request_scope(deadline, f"GET {url}") as scope:
        resp = scope.read(requests.get(
            url, params=params, headers={"Accept": "application/json"},
            stream=True, timeout=scope.timeout,
        ))

    if resp.status_code != 200:
        raise ForecastError(
            f"Forecast request failed: statusCode={resp.status_code}; "
            f"statusText={resp.reason}; body={resp.text}"
        )

    try:
        body = resp.json()
    except ValueError as e:
        raise ForecastError(f"Forecast response is not JSON: {resp.text[:500]!r}") from e

    intervals = parse_timelines(body)
    logger.info("Fetched %d forecast intervals from Tomorrow.io", len(intervals))
    return intervals

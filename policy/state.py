import logging
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Iterable

from enlighten.client import BatteryMode, BatteryUsage
from errors import GridletError
from tomorrow.client import SEVERE_WEATHER_CODES, ForecastInterval

logger = logging.getLogger(__name__)

# Self-power between these local times; grid-charge outside them
SELF_POWER_BEGIN = time(6, 0)
SELF_POWER_END = time(20, 0)

# A scheduler firing a few minutes early or late should still land inside
# the window it was meant for.
SLOP = timedelta(minutes=10)

# Gusts above this are treated as an outage risk (m/s)
MAX_WIND_GUST_MS = 20.0

# Backup reserve written for each state (%)
GRID_CHARGE_BACKUP_PCT = 100
SELF_POWER_BACKUP_PCT = 30


class StateError(GridletError):
    """A battery usage or state outside the known set."""


class State(Enum):
    CHARGE_FROM_GRID = "charge_from_grid"
    SELF_POWER = "self_power"


def _in_self_power_window(now: datetime) -> bool:
    begin = datetime.combine(now.date(), SELF_POWER_BEGIN, tzinfo=now.tzinfo) - SLOP
    end = datetime.combine(now.date(), SELF_POWER_END, tzinfo=now.tzinfo) + SLOP
    return begin <= now < end


def _severe_interval(forecast: Iterable[ForecastInterval]) -> ForecastInterval | None:
    for interval in forecast:
        if interval.weather_code in SEVERE_WEATHER_CODES or interval.wind_gust_ms > MAX_WIND_GUST_MS:
            return interval
    return None


def next_state(now: datetime, forecast: Iterable[ForecastInterval] | None = None) -> State:
    """Decide what the battery should be doing at `now`.

    Outside the self-power window this is always CHARGE_FROM_GRID. Inside it,
    any forecast interval with severe weather or strong gusts forces
    CHARGE_FROM_GRID so the battery is full going into a possible outage.
    """
    if not _in_self_power_window(now):
        return State.CHARGE_FROM_GRID

    if forecast is not None:
        bad = _severe_interval(forecast)
        if bad is not None:
            logger.info(
                "Forecast at %s (%s, gusts %.1f m/s) overrides self-power",
                bad.timestamp.isoformat(), bad.weather_code.name, bad.wind_gust_ms,
            )
            return State.CHARGE_FROM_GRID

    return State.SELF_POWER


def state_from_battery_info(mode: BatteryMode | BatteryUsage | str) -> State:
    usage = mode.usage if isinstance(mode, BatteryMode) else mode
    if isinstance(usage, str):
        try:
            usage = BatteryUsage(usage)
        except ValueError as e:
            raise StateError(f"Could not determine state from battery usage {usage!r}") from e

    if usage is BatteryUsage.BACKUP_ONLY:
        return State.CHARGE_FROM_GRID
    if usage is BatteryUsage.SELF_CONSUMPTION:
        return State.SELF_POWER
    raise StateError(f"Could not determine state from battery usage {usage!r}")


def battery_mode_for_state(state: State) -> BatteryMode:
    if state is State.CHARGE_FROM_GRID:
        return BatteryMode(BatteryUsage.BACKUP_ONLY, GRID_CHARGE_BACKUP_PCT)
    if state is State.SELF_POWER:
        return BatteryMode(BatteryUsage.SELF_CONSUMPTION, SELF_POWER_BACKUP_PCT)
    raise StateError(f"Unexpected state: {state!r}")

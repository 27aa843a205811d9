"""One Gridlet run: log in, read the battery, decide, and (maybe) write.

Drivers (CLI, Lambda) build a GridletConfig and call run(). Every outbound
request gets its own Deadline from deadline_factory; calls are strictly
sequential and nothing is retried.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable
from zoneinfo import ZoneInfo

from config import GridletConfig
from deadline import Deadline
from enlighten.client import create_session, get_battery_info, set_battery_info
from errors import GridletError
from policy.state import State, battery_mode_for_state, next_state, state_from_battery_info
from tomorrow.client import get_forecast, parse_location

logger = logging.getLogger(__name__)

FORECAST_FIELDS = ["temperature", "weatherCode", "windGust"]
FORECAST_PARAMS = {
    "timesteps": "1h",
    "startTime": "now",
    "endTime": "nowPlus4h",
    "units": "metric",
}


class LoginFailed(GridletError):
    """The portal rejected our credentials; nothing was changed."""


@dataclass(frozen=True)
class RunResult:
    current: State
    target: State
    changed: bool   # target differs from current
    applied: bool   # a new battery mode was written


def _now(cfg: GridletConfig) -> datetime:
    if cfg.timezone:
        return datetime.now(ZoneInfo(cfg.timezone))
    return datetime.now().astimezone()


def run(cfg: GridletConfig, now: datetime | None = None,
        deadline_factory: Callable[[], Deadline] | None = None) -> RunResult:
    if deadline_factory is None:
        def deadline_factory():
            return Deadline(cfg.request_timeout_s)

    base = cfg.enphase_url_base
    session = create_session(cfg.enphase_user, cfg.enphase_password, base, deadline_factory())
    if session is None:
        raise LoginFailed(f"Failed to log in to {base} as {cfg.enphase_user}")

    battery = get_battery_info(session, base, deadline_factory())
    current = state_from_battery_info(battery)

    forecast = None
    if cfg.forecast_enabled:
        forecast = get_forecast(
            cfg.tomorrow_api_key,
            parse_location(cfg.tomorrow_location),
            FORECAST_FIELDS,
            FORECAST_PARAMS,
            deadline=deadline_factory(),
            base_url=cfg.tomorrow_url_base,
        )
        logger.debug("forecast=%s", forecast)
    else:
        logger.debug("No Tomorrow.io key/location configured; deciding on time alone")

    now = now or _now(cfg)
    target = next_state(now, forecast)
    logger.info("Transitioning state from %s to %s", current.name, target.name)

    if target == current:
        logger.info("Current state un-changed; doing nothing")
        return RunResult(current=current, target=target, changed=False, applied=False)

    if cfg.dry_run:
        logger.info("Dry run; leaving battery in %s", current.name)
        return RunResult(current=current, target=target, changed=True, applied=False)

    mode = battery_mode_for_state(target)
    logger.info("Setting battery to %s (%d%% backup)", mode.usage.value, mode.backup_percentage)
    set_battery_info(session, mode, base, deadline_factory())
    return RunResult(current=current, target=target, changed=True, applied=True)

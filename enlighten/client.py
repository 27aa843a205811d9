"""Enphase Enlighten portal client.

Enlighten has no token API for battery settings, so we behave like a browser:
fetch the home page for its cookies and login form, post the form back with
credentials, and hold on to the cookies from the redirect. The battery
settings endpoint then accepts the session cookie, with the session cookie
also doubling as the CSRF token on writes.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

import requests

from deadline import Deadline, request_scope
from enlighten.cookies import cookie_header, response_cookies
from enlighten.login_form import scrape_form_fields
from errors import GridletError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://enlighten.enphaseenergy.com"
LOGIN_PATH = "/login/login"
USERNAME_FIELD = "user[email]"
PASSWORD_FIELD = "user[password]"
SESSION_COOKIE = "_enlighten_4_session"
UPDATE_OK_MESSAGE = "Battery config updated successfully"


class EnlightenError(GridletError):
    """Unexpected response from the portal after (or outside of) login."""


class BatteryUsage(Enum):
    """Battery profile as named by the portal."""
    BACKUP_ONLY = "backup_only"            # charge from grid, hold for outages
    SELF_CONSUMPTION = "self-consumption"  # discharge to power the home


@dataclass(frozen=True)
class BatteryMode:
    usage: BatteryUsage
    backup_percentage: int | None = None   # reserve kept for outages (0-100)

    def __post_init__(self):
        pct = self.backup_percentage
        if pct is not None and not 0 <= pct <= 100:
            raise ValueError(f"backup percentage must be within 0-100, got {pct}")


@dataclass(frozen=True)
class Session:
    """Authenticated portal handle. A new login yields a new Session."""
    cookies: Mapping[str, str]
    site_id: str

    def __post_init__(self):
        # Freeze a private copy so the caller's dict can't alter us later
        object.__setattr__(self, "cookies", MappingProxyType(dict(self.cookies)))


def _base(base_url: str) -> str:
    return base_url.rstrip("/")


def _login_location_re(base_url: str) -> re.Pattern:
    return re.compile(
        rf"^(?:{re.escape(_base(base_url))})?/web/(?P<site_id>[0-9]+)\?v=.*$"
    )


def _battery_config_url(base_url: str, site_id: str) -> str:
    return f"{_base(base_url)}/pv/settings/{site_id}/battery_config?source=my_enlighten"


def _json_body(resp: requests.Response, url: str) -> Any:
    try:
        return resp.json()
    except ValueError as e:
        raise EnlightenError(
            f"Non-JSON response from {url} (status {resp.status_code}): {resp.text[:500]!r}"
        ) from e


def create_session(username: str, password: str,
                   base_url: str = DEFAULT_BASE_URL,
                   deadline: Deadline | None = None) -> Session | None:
    """Log in to Enlighten.

    Returns None when the portal rejects the login (bad credentials, no login
    form, unexpected redirect). Transport failures raise.
    """
    base = _base(base_url)

    with request_scope(deadline, f"GET {base}/") as scope:
        bootstrap = scope.read(requests.get(f"{base}/", stream=True, timeout=scope.timeout))
    if not bootstrap.ok:
        raise EnlightenError(
            f"Bootstrap GET {base}/ failed with status {bootstrap.status_code}: {bootstrap.reason}"
        )
    cookies = response_cookies(bootstrap)

    form_fields = scrape_form_fields(bootstrap.text, LOGIN_PATH)
    if form_fields is None:
        logger.warning("No login form posting to %s found on %s/", LOGIN_PATH, base)
        return None

    fields = {USERNAME_FIELD: username, PASSWORD_FIELD: password}
    fields.update(form_fields)
    logger.debug("Submitting login form with fields %s", sorted(fields))

    login_url = f"{base}{LOGIN_PATH}"
    with request_scope(deadline, f"POST {login_url}") as scope:
        resp = scope.read(requests.post(
            login_url,
            data=fields,
            headers={"Cookie": cookie_header(cookies)},
            allow_redirects=False,
            stream=True,
            timeout=scope.timeout,
        ))

    if resp.status_code != 302:
        logger.warning("Login rejected: expected 302 from %s, got %d", login_url, resp.status_code)
        return None

    location = resp.headers.get("Location", "")
    match = _login_location_re(base).match(location)
    if not match:
        logger.warning("Login redirected somewhere unexpected: %r", location)
        return None

    session = Session(cookies=response_cookies(resp, cookies), site_id=match.group("site_id"))
    logger.info("Logged in to Enlighten; site %s", session.site_id)
    return session


def get_battery_info(session: Session, base_url: str = DEFAULT_BASE_URL,
                     deadline: Deadline | None = None) -> BatteryMode:
    """Read the site's current battery profile."""
    url = _battery_config_url(base_url, session.site_id)
    with request_scope(deadline, f"GET {url}") as scope:
        resp = scope.read(requests.get(
            url, headers={"Cookie": cookie_header(session.cookies)}, stream=True, timeout=scope.timeout,
        ))

    if resp.status_code != 200:
        raise EnlightenError(
            f"GET {url} failed with status {resp.status_code}: {resp.text[:500]!r}"
        )

    body = _json_body(resp, url)
    logger.debug("battery_info=%s", body)
    try:
        raw = body["battery_config"]
        raw_usage = raw["usage"]
    except (KeyError, TypeError) as e:
        raise EnlightenError(f"GET {url} returned no battery_config.usage: {body!r}") from e

    try:
        usage = BatteryUsage(raw_usage)
    except ValueError as e:
        raise EnlightenError(f"GET {url} returned unknown battery usage {raw_usage!r}") from e

    pct = raw.get("battery_backup_percentage")
    try:
        return BatteryMode(usage=usage, backup_percentage=int(pct) if pct is not None else None)
    except (TypeError, ValueError) as e:
        raise EnlightenError(f"GET {url} returned bad battery_backup_percentage {pct!r}") from e


def set_battery_info(session: Session, mode: BatteryMode,
                     base_url: str = DEFAULT_BASE_URL,
                     deadline: Deadline | None = None):
    """Write a new battery profile. Raises unless the portal confirms it."""
    if mode.backup_percentage is None:
        raise ValueError("A backup percentage is required when writing a battery mode")

    token = session.cookies.get(SESSION_COOKIE)
    if not token:
        raise EnlightenError(
            f"Session has no {SESSION_COOKIE} cookie to use as the e-auth-token"
        )

    url = _battery_config_url(base_url, session.site_id)
    form = {
        "usage": mode.usage.value,
        "battery_backup_percentage": mode.backup_percentage,
    }
    with request_scope(deadline, f"PUT {url}") as scope:
        resp = scope.read(requests.put(
            url,
            data=form,
            headers={
                "Cookie": cookie_header(session.cookies),
                "e-auth-token": token,
            },
            stream=True,
            timeout=scope.timeout,
        ))

    if resp.status_code != 200:
        raise EnlightenError(
            f"PUT {url} failed with status {resp.status_code}: {resp.reason}; body={resp.text[:500]!r}"
        )

    body = _json_body(resp, url)
    message = body.get("message") if isinstance(body, dict) else None
    if message != UPDATE_OK_MESSAGE:
        raise EnlightenError(f"PUT {url} was not confirmed; message={message!r}")

    logger.info("Battery set to %s with %d%% backup", mode.usage.value, mode.backup_percentage)

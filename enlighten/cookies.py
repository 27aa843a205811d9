"""Session cookie tracking for the Enlighten portal.

requests folds repeated Set-Cookie headers into one comma-joined value. That
is fine for list-valued headers but not for Set-Cookie, whose Expires
attribute carries a comma of its own ("Expires=Wed, 21 Oct 2026 ..."), so
the combined value has to be split with a cookie-aware scanner rather than
str.split(",").
"""

import logging
from typing import Iterable, Mapping
from urllib.parse import unquote

import requests

from errors import GridletError

logger = logging.getLogger(__name__)


class CookieError(GridletError):
    """A Set-Cookie value that doesn't start with name=value."""


def split_cookies_string(header: str | None) -> list[str]:
    """Split a comma-joined Set-Cookie header into one string per cookie.

    A comma only separates cookies when the text after it (ignoring leading
    whitespace) reaches '=' before any ';' or ','; i.e. it looks like the
    start of a new name=value pair.
    """
    if not header:
        return []

    parts = []
    start = 0
    n = len(header)
    pos = header.find(",")
    while pos != -1:
        look = pos + 1
        while look < n and header[look].isspace():
            look += 1
        tok_end = look
        while tok_end < n and header[tok_end] not in "=;,":
            tok_end += 1
        if tok_end < n and tok_end > look and header[tok_end] == "=":
            parts.append(header[start:pos].strip())
            start = look
        pos = header.find(",", pos + 1)
    parts.append(header[start:].strip())

    return [p for p in parts if p]


def parse_set_cookie(raw: str) -> tuple[str, str]:
    """Return the (name, value) pair of a single Set-Cookie string.

    Attributes (Path, Expires, HttpOnly, ...) are dropped. The value is
    percent-decoded; one that does not decode to UTF-8 is kept as sent.
    """
    pair = raw.split(";", 1)[0]
    name, sep, value = pair.partition("=")
    name = name.strip()
    if not sep or not name:
        raise CookieError(f"Malformed Set-Cookie value: {raw!r}")

    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        value = value[1:-1]
    try:
        value = unquote(value, errors="strict")
    except UnicodeDecodeError:
        pass
    return name, value


def update_cookies(prev: Mapping[str, str] | None, raw_values: Iterable[str]) -> dict[str, str]:
    """Return a new jar: prev overlaid with every cookie in raw_values."""
    jar = dict(prev) if prev else {}
    for raw in raw_values:
        name, value = parse_set_cookie(raw)
        jar[name] = value
    return jar


def response_cookies(resp: requests.Response, prev: Mapping[str, str] | None = None) -> dict[str, str]:
    raw = split_cookies_string(resp.headers.get("Set-Cookie"))
    jar = update_cookies(prev, raw)
    logger.debug("Response set %d cookie(s); jar now holds %s", len(raw), sorted(jar))
    return jar


def cookie_header(jar: Mapping[str, str]) -> str:
    return "; ".join(f"{k}={v}" for k, v in jar.items())

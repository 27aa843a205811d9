"""Per-request deadlines and cancellation.

Every outbound HTTP call runs inside request_scope(). The scope either honours
a caller-supplied Deadline (e.g. one bounded by the Lambda runtime's remaining
time, or one cancelled from a signal handler) or creates its own with the
default timeout. requests' timeout only bounds each socket read, so responses
are streamed and the body is read through RequestScope.read(), which checks
the deadline and cancellation between reads and gives up as soon as either
trips.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator

import requests

from errors import GridletError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 10.0

# A blocking read returns only once the whole chunk has arrived, so the body is
# read a byte at a time to keep every wait shorter than the deadline.
_READ_CHUNK = 1


class DeadlineExceeded(GridletError, TimeoutError):
    """Raised when a request is cancelled or runs out of time."""


class Deadline:
    """A point in time after which outstanding requests are abandoned."""

    def __init__(self, timeout_s: float = DEFAULT_TIMEOUT_S,
                 clock: Callable[[], float] = time.monotonic):
        if timeout_s <= 0:
            raise ValueError(f"timeout must be positive, got {timeout_s}")
        self.timeout_s = timeout_s
        self._clock = clock
        self._expires_at = clock() + timeout_s
        self._cancelled = threading.Event()

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def __repr__(self):
        return f"Deadline(remaining={self.remaining():.2f}s, cancelled={self.cancelled})"


class RequestScope:
    """One outbound request bounded by a Deadline."""

    def __init__(self, deadline: Deadline, what: str):
        self.deadline = deadline
        self.what = what

    @property
    def timeout(self) -> float:
        """Seconds to hand requests as its per-read timeout."""
        return self.deadline.remaining()

    def check(self):
        if self.deadline.cancelled:
            raise DeadlineExceeded(f"{self.what} cancelled")
        if self.deadline.expired:
            raise DeadlineExceeded(
                f"{self.what} abandoned; deadline of {self.deadline.timeout_s:.1f}s passed"
            )

    def read(self, resp: requests.Response) -> requests.Response:
        """Load the body of a streamed response, then close it.

        The returned response behaves like a non-streamed one (.text, .json()).
        """
        chunks = []
        try:
            for chunk in resp.iter_content(chunk_size=_READ_CHUNK):
                chunks.append(chunk)
                self.check()
        except requests.ConnectionError as e:
            # requests reports a read timeout mid-body as a ConnectionError
            if self.deadline.expired:
                raise DeadlineExceeded(f"{self.what} timed out reading the body: {e}") from e
            raise
        finally:
            resp.close()
        resp._content = b"".join(chunks)
        return resp


@contextmanager
def request_scope(deadline: Deadline | None, what: str = "request") -> Iterator[RequestScope]:
    """Yield a RequestScope for one call.

    Raises DeadlineExceeded up front if the deadline is already cancelled or
    spent, and converts a requests timeout raised inside the block.
    """
    scope = RequestScope(deadline or Deadline(), what)
    if scope.deadline.cancelled:
        raise DeadlineExceeded(f"{what} cancelled before it was sent")
    if scope.deadline.expired:
        raise DeadlineExceeded(
            f"{what} not sent; deadline of {scope.deadline.timeout_s:.1f}s already passed"
        )

    timeout = scope.timeout
    try:
        yield scope
    except requests.Timeout as e:
        logger.debug("%s timed out after %.1fs", what, timeout)
        raise DeadlineExceeded(f"{what} timed out after {timeout:.1f}s: {e}") from e

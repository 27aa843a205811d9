"""Tests for request deadlines and cancellation."""

import os
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest
import requests

from deadline import DEFAULT_TIMEOUT_S, Deadline, DeadlineExceeded, request_scope
from errors import GridletError
from fake_enphase import make_response
from tomorrow.client import get_forecast


class FakeClock:
    def __init__(self, t: float = 1000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


class TestDeadline:
    def setup_method(self):
        self.clock = FakeClock()
        self.deadline = Deadline(10.0, clock=self.clock)

    def test_remaining_counts_down(self):
        assert self.deadline.remaining() == 10.0
        self.clock.t += 4.0
        assert self.deadline.remaining() == 6.0
        assert not self.deadline.expired

    def test_expires(self):
        self.clock.t += 10.0
        assert self.deadline.remaining() == 0.0
        assert self.deadline.expired
        self.clock.t += 5.0
        assert self.deadline.remaining() == 0.0

    def test_cancel(self):
        assert not self.deadline.cancelled
        self.deadline.cancel()
        assert self.deadline.cancelled

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError):
            Deadline(0)

    def test_exceeded_is_a_timeout_and_a_gridlet_error(self):
        assert issubclass(DeadlineExceeded, TimeoutError)
        assert issubclass(DeadlineExceeded, GridletError)


class TestRequestScope:
    def setup_method(self):
        self.clock = FakeClock()
        self.deadline = Deadline(10.0, clock=self.clock)

    def test_yields_remaining_time(self):
        self.clock.t += 3.0
        with request_scope(self.deadline) as scope:
            assert scope.timeout == 7.0
            assert scope.deadline is self.deadline

    def test_default_deadline(self):
        with request_scope(None) as scope:
            assert 0 < scope.timeout <= DEFAULT_TIMEOUT_S

    def test_cancelled_before_send(self):
        self.deadline.cancel()
        entered = False
        with pytest.raises(DeadlineExceeded, match="cancelled"):
            with request_scope(self.deadline, "GET /x"):
                entered = True
        assert not entered

    def test_expired_before_send(self):
        self.clock.t += 11.0
        with pytest.raises(DeadlineExceeded, match="GET /x"):
            with request_scope(self.deadline, "GET /x"):
                pass

    def test_requests_timeout_converted(self):
        with pytest.raises(DeadlineExceeded) as exc_info:
            with request_scope(self.deadline, "GET /slow"):
                raise requests.ReadTimeout("read timed out")
        assert isinstance(exc_info.value.__cause__, requests.Timeout)

    def test_other_errors_propagate_unchanged(self):
        with pytest.raises(requests.ConnectionError):
            with request_scope(self.deadline):
                raise requests.ConnectionError("refused")

    def test_reusable_after_success(self):
        for _ in range(3):
            with request_scope(self.deadline) as scope:
                assert scope.timeout == 10.0


class TickingRaw:
    """A response body that advances the clock by one second per byte."""

    def __init__(self, body: bytes, clock: FakeClock):
        self.body = body
        self.clock = clock
        self.sent = 0
        self.closed = False

    def read(self, amt=None):
        if self.sent >= len(self.body):
            return b""
        self.clock.t += 1.0
        self.sent += 1
        return self.body[self.sent - 1:self.sent]

    def close(self):
        self.closed = True


def streamed_response(raw) -> requests.Response:
    resp = requests.Response()
    resp.status_code = 200
    resp.encoding = "utf-8"
    resp.raw = raw
    return resp


class TestRead:
    def setup_method(self):
        self.clock = FakeClock()
        self.deadline = Deadline(2.5, clock=self.clock)

    def test_loads_body(self):
        with request_scope(self.deadline, "GET /x") as scope:
            resp = scope.read(make_response(json_body={"ok": True}))
        assert resp.json() == {"ok": True}

    def test_loads_streamed_body_within_deadline(self):
        raw = TickingRaw(b"ok", self.clock)
        with request_scope(self.deadline, "GET /x") as scope:
            resp = scope.read(streamed_response(raw))
        assert resp.text == "ok"

    def test_gives_up_mid_body_and_closes(self):
        raw = TickingRaw(b"0123456789", self.clock)
        with pytest.raises(DeadlineExceeded, match="GET /x"):
            with request_scope(self.deadline, "GET /x") as scope:
                scope.read(streamed_response(raw))
        assert raw.sent == 3
        assert raw.closed

    def test_cancel_mid_body(self):
        raw = TickingRaw(b"0123456789", self.clock)
        original_read = raw.read

        def read_then_cancel(amt=None):
            self.deadline.cancel()
            return original_read(amt)

        raw.read = read_then_cancel
        with pytest.raises(DeadlineExceeded, match="cancelled"):
            with request_scope(self.deadline, "GET /x") as scope:
                scope.read(streamed_response(raw))
        assert raw.sent == 1
        assert raw.closed

    def test_read_timeout_mid_body_after_expiry(self):
        class StalledRaw(TickingRaw):
            def read(self, amt=None):
                self.clock.t += 5.0
                raise requests.ConnectionError("Read timed out.")

        with pytest.raises(DeadlineExceeded, match="timed out"):
            with request_scope(self.deadline, "GET /x") as scope:
                scope.read(streamed_response(StalledRaw(b"", self.clock)))

    def test_connection_error_before_expiry_propagates(self):
        class ResetRaw(TickingRaw):
            def read(self, amt=None):
                raise requests.ConnectionError("reset")

        with pytest.raises(requests.ConnectionError):
            with request_scope(self.deadline, "GET /x") as scope:
                scope.read(streamed_response(ResetRaw(b"", self.clock)))


class TrickleHandler(BaseHTTPRequestHandler):
    body = b'{"x": 1}'
    interval_s = 0.4

    def do_GET(self):
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(self.body)))
        self.end_headers()
        try:
            for i in range(len(self.body)):
                self.wfile.write(self.body[i:i + 1])
                self.wfile.flush()
                time.sleep(self.interval_s)
        except (BrokenPipeError, ConnectionResetError):
            pass

    def log_message(self, format, *args):
        pass


class FastHandler(TrickleHandler):
    interval_s = 0.0


class LocalServerTest:
    handler = TrickleHandler

    def setup_method(self):
        self._env = patch.dict(os.environ, {"NO_PROXY": "127.0.0.1", "no_proxy": "127.0.0.1"})
        self._env.start()
        self.server = ThreadingHTTPServer(("127.0.0.1", 0), self.handler)
        self.url = f"http://127.0.0.1:{self.server.server_address[1]}"
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()

    def teardown_method(self):
        self.server.shutdown()
        self.server.server_close()
        self._env.stop()


class TestSlowServer(LocalServerTest):
    def test_whole_request_bounded_by_deadline(self):
        started = time.monotonic()
        with pytest.raises(DeadlineExceeded):
            with request_scope(Deadline(1.0), "GET /slow") as scope:
                scope.read(requests.get(f"{self.url}/slow", stream=True, timeout=scope.timeout))
        assert time.monotonic() - started <= 1.5

    def test_forecast_bounded_by_deadline(self):
        started = time.monotonic()
        with pytest.raises(DeadlineExceeded):
            get_forecast("key", [1.0, 2.0], ["windGust"], deadline=Deadline(1.0), base_url=self.url)
        assert time.monotonic() - started <= 1.5


class TestFastServer(LocalServerTest):
    handler = FastHandler

    def test_body_read_in_full(self):
        with request_scope(Deadline(5.0), "GET /fast") as scope:
            resp = scope.read(requests.get(f"{self.url}/fast", stream=True, timeout=scope.timeout))
        assert resp.json() == {"x": 1}

"""Pytest configuration and fakes standing in for the network."""

import json
from datetime import datetime, timezone

import pytest
from websockets.exceptions import ConnectionClosedOK

from ac_monitor import CredentialTriple, Meeting, Room, RoomRecord, StatusStore

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)
CREDS = CredentialTriple(ticket="abc123", origin="meet-host-1:443", app_instance="7%2F1A2B")


def login_command(signal):
    return json.dumps(
        {"method": "onCommand", "command": "loginHandler", "params": {"arg_0": {"command": signal}}}
    )


HEARTBEAT_MSG = '{"method":"heartbeat"}'


class FakeWebSocket:
    """Plays back queued frames, then behaves like a closed connection."""

    def __init__(self, frames=(), close_error=None):
        self.frames = list(frames)
        self.sent = []
        self.closed = False
        self.close_error = close_error

    async def send(self, message):
        self.sent.append(message)

    async def recv(self):
        if not self.frames:
            raise ConnectionClosedOK(None, None)
        return self.frames.pop(0)

    async def close(self):
        self.closed = True
        if self.close_error:
            raise self.close_error


class FakeSession:
    def __init__(self, frames=()):
        self.frames = list(frames)
        self.closed = False

    async def receive(self):
        return self.frames.pop(0) if self.frames else None

    async def close(self):
        self.closed = True


class Scripted:
    """Async callable returning (or raising) queued results in order."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    async def __call__(self, *args, **kwargs):
        self.calls.append(args)
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


class SleepRecorder:
    def __init__(self, stop_after=None):
        self.calls = []
        self.stop_after = stop_after

    async def __call__(self, seconds):
        self.calls.append(seconds)
        if self.stop_after is not None and len(self.calls) >= self.stop_after:
            raise StopMonitor()


class StopMonitor(BaseException):
    """Escapes RoomMonitor.run(), which otherwise never returns."""


@pytest.fixture
def record():
    return RoomRecord(
        Room(
            name="cs101",
            url="https://canvas.example.edu/courses/101",
            meetings=(Meeting("Mon", "13:30"), Meeting("Wed", "13:30")),
        ),
        now=EPOCH,
    )


@pytest.fixture
def store(record):
    return StatusStore([record, RoomRecord(Room(name="math51", url="https://canvas.example.edu/courses/51"), now=EPOCH)])

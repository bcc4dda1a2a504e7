"""
Shared fixtures for chora-resources tests.
"""

from typing import List

import pytest

from chora_resources.transport import Request, Transport


class ManualTransport(Transport):
    """Transport that records requests and lets the test settle them."""

    def __init__(self):
        self.requests: List[Request] = []

    def send(self, request: Request) -> None:
        self.requests.append(request)

    @property
    def last(self) -> Request:
        return self.requests[-1]


class ImmediateTransport(Transport):
    """Transport that settles every request synchronously with a canned payload."""

    def __init__(self, payload=None, http_code=None, error=None):
        self.payload = payload
        self.http_code = http_code
        self.error = error
        self.requests: List[Request] = []

    def send(self, request: Request) -> None:
        self.requests.append(request)
        if self.error is not None:
            request.on_error(self.http_code, self.error)
        else:
            request.on_success(self.payload)


@pytest.fixture
def transport():
    """A transport whose requests stay in flight until settled by the test."""
    return ManualTransport()


@pytest.fixture
def immediate_transport():
    """A transport that settles every request at once with a created user."""
    return ImmediateTransport(payload={"id": 5, "name": "Eve"})

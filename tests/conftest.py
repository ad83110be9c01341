"""
Pytest Configuration and Fixtures for the cell_telemetry project.

This module provides a scripted stand-in for paho's MQTT client, so the
session manager can be exercised without a broker or a network.
"""

import sys
from types import SimpleNamespace
from unittest.mock import MagicMock
import pytest
import logging

from cell_telemetry.agent.models import SessionOptions
from cell_telemetry.agent.mqtt import MQTTSession

# --- Protocol Client Fake ---

class FakeMQTTClient:
    """
    Mimics the slice of `paho.mqtt.client.Client` the session uses.

    Return codes are scripted through the constructor; `publish_rcs` and
    `subscribe_rcs` are consumed one per call and default to success.
    Callbacks (on_connect, on_message, ...) are attached by the session
    exactly like on the real client.
    """
    def __init__(self, connack_code=0, connect_error=None, connect_rc=0, read_rc=0,
                 publish_rcs=None, subscribe_rcs=None, misc_rc=0, write_rc=0, want_write=False):
        self.sock = MagicMock(name="socket")
        self.connack_code = connack_code
        self.connect_error = connect_error
        self.connect_rc = connect_rc
        self.read_rc = read_rc
        self.publish_rcs = list(publish_rcs or [])
        self.subscribe_rcs = list(subscribe_rcs or [])
        self.misc_rc = misc_rc
        self.write_rc = write_rc
        self.pending_write = want_write

        self.connect_args = None
        self.published = []
        self.subscribed = []
        self.inbound = [] # callables run (with the client) on the next loop_read
        self.read_calls = 0
        self.misc_calls = 0
        self.disconnect_calls = 0
        self._connack_pending = False

    def connect(self, host, port=1883, keepalive=60):
        self.connect_args = (host, port, keepalive)
        if self.connect_error is not None:
            raise self.connect_error
        self._connack_pending = self.connect_rc == 0
        return self.connect_rc

    def socket(self):
        return self.sock

    def loop_read(self, max_packets=1):
        self.read_calls += 1
        if self._connack_pending:
            self._connack_pending = False
            self.on_connect(self, None, {}, self.connack_code, None)
        inbound, self.inbound = self.inbound, []
        for event in inbound:
            event(self)
        return self.read_rc

    def want_write(self):
        return self.pending_write

    def loop_write(self):
        return self.write_rc

    def loop_misc(self):
        self.misc_calls += 1
        return self.misc_rc

    def publish(self, topic, payload=None, qos=0, retain=False):
        self.published.append((topic, payload, qos, retain))
        rc = self.publish_rcs.pop(0) if self.publish_rcs else 0
        return SimpleNamespace(rc=rc, mid=len(self.published))

    def subscribe(self, topic, qos=0):
        self.subscribed.append((topic, qos))
        rc = self.subscribe_rcs.pop(0) if self.subscribe_rcs else 0
        return rc, len(self.subscribed)

    def disconnect(self):
        self.disconnect_calls += 1
        return 0


class FakeClientFactory:
    """Hands out the scripted clients in order, then healthy default ones."""
    def __init__(self, *clients):
        self.queue = list(clients)
        self.created = []

    def __call__(self, target, options):
        client = self.queue.pop(0) if self.queue else FakeMQTTClient()
        self.created.append(client)
        return client


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """
    Configures the Python logging framework globally for all tests.
    Because tests bypass main.py, this ensures our logs are formatted
    and visible exactly how we want them during test runs.
    """
    formatter = logging.Formatter(fmt="%(levelname)-8s %(message)s - %(funcName)s:%(lineno)d ")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)

@pytest.fixture
def make_client():
    """The FakeMQTTClient class, for tests that script their own outcomes."""
    return FakeMQTTClient

@pytest.fixture
def make_session():
    """
    Builds an MQTTSession wired to fakes. Returns a namespace with the
    session, the client factory, the readiness poller and the sleep mock.
    """
    def _make(*clients, options=None, readable=True):
        factory = FakeClientFactory(*clients)
        poller = MagicMock(name="poller", return_value=readable)
        sleep = MagicMock(name="sleep")
        session = MQTTSession(options=options or SessionOptions(),
                              client_factory=factory,
                              poller=poller,
                              sleep=sleep)
        return SimpleNamespace(session=session, factory=factory, poller=poller, sleep=sleep)
    return _make

@pytest.fixture
def live_session(make_session):
    """A session that has already completed its handshake with a fake broker."""
    harness = make_session()
    status = harness.session.initialize("broker.example", "dev-1", "u", "p", 1884)
    assert status == 0
    return harness

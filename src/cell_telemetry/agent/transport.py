"""
Protocol Client Factory and Readiness Polling.

This module is responsible for:
- Building the paho-mqtt client the session talks through (identity,
  credentials, protocol version, no client-side auto reconnect).
- Drawing packet identifiers at random for every publish/subscribe.
- Waiting, with a hard timeout, for the transport socket to become readable.
- Estimating encoded packet sizes so oversized messages can be refused
  before they touch the wire.
"""
import logging
import random
import select
from typing import Any, Dict

import paho.mqtt.client as mqtt
from paho.mqtt.enums import CallbackAPIVersion

from cell_telemetry.agent.models import AT_LEAST_ONCE, BrokerTarget, SessionOptions

logger = logging.getLogger(__name__)

PROTOCOL_VERSIONS: Dict[str, Any] = {
    "3.1": mqtt.MQTTv31,
    "3.1.1": mqtt.MQTTv311,
    "5": mqtt.MQTTv5,
}


class TelemetryClient(mqtt.Client):
    """paho client whose packet identifiers are random rather than sequential."""

    def _mid_generate(self) -> int:
        return random.randint(1, 65535)


def resolve_protocol(name: str):
    try:
        return PROTOCOL_VERSIONS[str(name)]
    except KeyError:
        raise ValueError(f"Unsupported MQTT protocol version '{name}'. "
                         f"Choose one of {sorted(PROTOCOL_VERSIONS)}") from None


def create_client(target: BrokerTarget, options: SessionOptions) -> mqtt.Client:
    """
    Creates a fresh protocol client for one connection attempt.

    Every attempt gets a new client so nothing queued on a dead connection
    is silently replayed on the next one.
    """
    client = TelemetryClient(callback_api_version=CallbackAPIVersion.VERSION2,
                             client_id=target.client_id,
                             protocol=resolve_protocol(options.protocol),
                             reconnect_on_failure=False)
    client.connect_timeout = options.connect_timeout # bounds the TCP connect itself
    if target.username:
        client.username_pw_set(target.username, target.password)
        logger.debug(f"Configured client '{target.client_id}' with username '{target.username}'")
    return client


def wait_readable(sock, timeout: float) -> bool:
    """
    Blocks for at most `timeout` seconds until `sock` has data to read.

    Returns False on timeout. Raises OSError when the socket is missing,
    closed, or reports an exceptional condition.
    """
    if sock is None:
        raise OSError("Transport has no socket to poll")
    try:
        readable, _, errored = select.select([sock], [], [sock], timeout)
    except ValueError as e:
        # select() refuses closed sockets (fileno == -1)
        raise OSError(f"Transport socket is closed: {e}") from e
    if errored:
        raise OSError("Transport socket reported an exceptional condition")
    return bool(readable)


def _remaining_length_size(length: int) -> int:
    size = 1
    while length > 127:
        length >>= 7
        size += 1
    return size


def publish_packet_size(topic: str, payload: bytes, qos: int = AT_LEAST_ONCE) -> int:
    """Encoded size of a PUBLISH packet (v3 framing)."""
    remaining = 2 + len(topic.encode('utf-8')) + len(payload)
    if qos > 0:
        remaining += 2 # packet identifier
    return 1 + _remaining_length_size(remaining) + remaining


def subscribe_packet_size(topic: str) -> int:
    """Encoded size of a single-topic SUBSCRIBE packet (v3 framing)."""
    remaining = 2 + 2 + len(topic.encode('utf-8')) + 1
    return 1 + _remaining_length_size(remaining) + remaining

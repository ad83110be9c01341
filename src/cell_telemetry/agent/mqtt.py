"""
MQTT Session Manager.

This module is responsible for:
- Owning the single broker connection of the device (connect, handshake, teardown).
- Giving `publish` and `subscribe` one reconnect-then-retry across a stale connection.
- Keeping the session alive through `tick`, the maintenance call the driver
  makes on every scheduling cycle (reconnect, pump input, keepalive).

Everything here is synchronous and bounded: the only blocking points are the
readiness waits (handshake and input poll) and the reconnect backoff in `tick`.
"""
import logging
import threading
import time
from typing import Callable, Optional, Union

import paho.mqtt.client as mqtt

from cell_telemetry.agent.events import EventDispatcher, bind_client_callbacks
from cell_telemetry.agent.models import (DEFAULT_PORT, BrokerTarget, OutboundMessage, SessionOptions,
                                         SessionState, SessionStatus, SubscriptionEntry, SubscriptionTable)
from cell_telemetry.agent.transport import (create_client, publish_packet_size, subscribe_packet_size,
                                            wait_readable)

logger = logging.getLogger(__name__)

# Failures a reconnect can fix
RETRYABLE = (SessionStatus.NO_CONNECTION, SessionStatus.SEND_FAILED)
IDLE_CODES = (mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_AGAIN)


class MQTTSession:
    target: Optional[BrokerTarget]
    options: SessionOptions
    state: SessionState
    subscriptions: SubscriptionTable

    """
    The one logical broker connection of the process.

    Created by the driver, initialized once, then kept alive by calling `tick`
    forever. `publish`/`subscribe` may be called in between; each makes sure the
    link is up before acting. Public operations are serialized with a
    re-entrant lock, so the session can be driven from a worker thread.
    """
    def __init__(self,
                 options: Optional[SessionOptions] = None,
                 client_factory: Callable = create_client,
                 poller: Callable = wait_readable,
                 sleep: Callable[[float], None] = time.sleep):
        self.options = options or SessionOptions()
        self.target = None
        self.state = SessionState()
        self.dispatcher = EventDispatcher(self.state, rx_buffer_size=self.options.rx_buffer_size)
        self.subscriptions = SubscriptionTable(capacity=self.options.max_subscriptions)

        self._client_factory = client_factory
        self._poll = poller
        self._sleep = sleep
        self._client = None
        self._lock = threading.RLock()
        self._has_connected = False

    @property
    def connected(self) -> bool:
        return self.state.connected

    # --- Connection Lifecycle ---

    def initialize(self, host: str, client_id: str, username: Optional[str] = None,
                   password: Optional[str] = None, port: int = DEFAULT_PORT) -> SessionStatus:
        """
        Stores the broker target and performs the first connect.
        Returns SessionStatus.OK once the broker has acknowledged the session.
        """
        with self._lock:
            self.target = BrokerTarget.create(host, client_id, username, password, port)
            logger.info(f"Initializing MQTT session to {self.target.host}:{self.target.port} "
                        f"as '{self.target.client_id}'")
            return self.connect()

    def connect(self) -> SessionStatus:
        """
        Replaces whatever connection exists with a fresh one and waits, bounded by
        `connect_timeout`, for the broker's handshake acknowledgement.
        """
        with self._lock:
            if self.target is None:
                logger.error("connect() called before initialize()")
                return SessionStatus.INVALID_ARGUMENT

            self._release()
            self.state.handshake_done = False
            self.state.connack_code = None

            try:
                client = self._client_factory(self.target, self.options)
            except ValueError as e:
                logger.error(f"Cannot build MQTT client: {e}")
                return SessionStatus.INVALID_ARGUMENT
            bind_client_callbacks(client, self.dispatcher)
            self._client = client

            try:
                rc = client.connect(self.target.host, self.target.port, keepalive=self.options.keepalive)
            except (OSError, ValueError) as e:
                logger.error(f"MQTT connect to {self.target.host}:{self.target.port} failed: {e}")
                self._release()
                return SessionStatus.CONNECT_FAILED
            if rc != mqtt.MQTT_ERR_SUCCESS:
                logger.error(f"MQTT connect failed: {mqtt.error_string(rc)}")
                self._release()
                return SessionStatus.CONNECT_FAILED

            try:
                readable = self._poll(client.socket(), self.options.connect_timeout)
            except OSError as e:
                logger.error(f"MQTT connection poll error: {e}")
                self._release()
                return SessionStatus.POLL_ERROR
            if not readable:
                logger.error(f"MQTT connection timeout after {self.options.connect_timeout}s")
                self._release()
                return SessionStatus.TIMED_OUT

            rc = client.loop_read()
            if rc != mqtt.MQTT_ERR_SUCCESS or not self.state.connected:
                logger.error(f"MQTT connection failed (input: {mqtt.error_string(rc)}, "
                             f"connack: {self.state.connack_code})")
                self._release()
                return SessionStatus.CONNECTION_ABORTED

            is_reconnect, self._has_connected = self._has_connected, True
            if is_reconnect and self.options.resubscribe_on_reconnect and len(self.subscriptions):
                self._resubscribe()
                if not self.state.connected:
                    self._release()
                    return SessionStatus.CONNECTION_ABORTED
            return SessionStatus.OK

    def close(self):
        """Disconnects from the broker. Meant for process shutdown only."""
        with self._lock:
            if self._client is not None:
                logger.info("Closing MQTT session")
            self._release()

    def _release(self):
        """Tears down the current protocol client and its socket, if any."""
        client, self._client = self._client, None
        self.state.connected = False
        if client is None:
            return
        sock = client.socket()
        try:
            client.disconnect()
        except (OSError, ValueError) as e:
            logger.debug(f"Ignoring error while releasing MQTT client: {e}")
        if sock is not None:
            sock.close()

    def _resubscribe(self):
        logger.info(f"Re-issuing {len(self.subscriptions)} subscription(s) after reconnect")
        for entry in self.subscriptions:
            status = self._send_subscribe(entry)
            if status != SessionStatus.OK:
                logger.warning(f"Resubscribe to '{entry.topic}' failed: {status.name}")
                if not self.state.connected:
                    return

    # --- Retry-Wrapped Outbound Operations ---

    def publish(self, topic: str, payload: Union[str, bytes]) -> SessionStatus:
        """
        Publishes `payload` to `topic` with at-least-once delivery.
        A failed send triggers exactly one reconnect and, if that works, exactly one more send.
        """
        with self._lock:
            data = payload.encode('utf-8') if isinstance(payload, str) else bytes(payload)
            if not topic or '+' in topic or '#' in topic:
                logger.error(f"Refusing to publish to invalid topic '{topic}'")
                return SessionStatus.INVALID_ARGUMENT

            message = OutboundMessage(topic=topic, payload=data)
            size = publish_packet_size(message.topic, message.payload, message.qos)
            if size > self.options.tx_buffer_size:
                logger.error(f"Publish to '{topic}' needs {size} bytes, "
                             f"send buffer holds {self.options.tx_buffer_size}")
                return SessionStatus.PAYLOAD_TOO_LARGE

            return self._with_reconnect_retry("publish", lambda: self._send_publish(message))

    def subscribe(self, topic: str) -> SessionStatus:
        """
        Subscribes to `topic` at QoS 1. The entry is only recorded once the
        subscribe call succeeded; a full table fails without any I/O.
        """
        with self._lock:
            if self.subscriptions.is_full:
                logger.error(f"Cannot subscribe to '{topic}': "
                             f"all {self.subscriptions.capacity} subscription slots are used")
                return SessionStatus.NO_CAPACITY
            if not topic:
                logger.error("Refusing to subscribe to an empty topic")
                return SessionStatus.INVALID_ARGUMENT
            size = subscribe_packet_size(topic)
            if size > self.options.tx_buffer_size:
                logger.error(f"Subscribe to '{topic}' needs {size} bytes, "
                             f"send buffer holds {self.options.tx_buffer_size}")
                return SessionStatus.PAYLOAD_TOO_LARGE

            entry = SubscriptionEntry(topic=topic)
            status = self._with_reconnect_retry("subscribe", lambda: self._send_subscribe(entry))
            if status == SessionStatus.OK:
                self.subscriptions.commit(entry)
                logger.info(f"Subscribed to '{topic}' ({len(self.subscriptions)}/{self.subscriptions.capacity})")
            return status

    def _with_reconnect_retry(self, operation: str, send: Callable[[], SessionStatus]) -> SessionStatus:
        status = send()
        if status not in RETRYABLE:
            return status
        logger.warning(f"MQTT {operation} failed ({status.name}), attempting to reconnect")
        if self.connect() != SessionStatus.OK:
            return status
        return send()

    def _send_publish(self, message: OutboundMessage) -> SessionStatus:
        if not self.state.connected or self._client is None:
            return SessionStatus.NO_CONNECTION
        try:
            info = self._client.publish(**message.to_publish_args())
        except ValueError as e:
            logger.error(f"MQTT publish to '{message.topic}' rejected: {e}")
            return SessionStatus.INVALID_ARGUMENT
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error(f"MQTT publish to '{message.topic}' failed: {mqtt.error_string(info.rc)}")
            self.state.connected = False
            return SessionStatus.SEND_FAILED
        logger.debug(f"Published message {info.mid} to '{message.topic}' ({len(message.payload)} bytes)")
        return SessionStatus.OK

    def _send_subscribe(self, entry: SubscriptionEntry) -> SessionStatus:
        if not self.state.connected or self._client is None:
            return SessionStatus.NO_CONNECTION
        try:
            rc, mid = self._client.subscribe(entry.topic, qos=entry.qos)
        except ValueError as e:
            logger.error(f"MQTT subscribe to '{entry.topic}' rejected: {e}")
            return SessionStatus.INVALID_ARGUMENT
        if rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error(f"MQTT subscribe to '{entry.topic}' failed: {mqtt.error_string(rc)}")
            self.state.connected = False
            return SessionStatus.SEND_FAILED
        logger.debug(f"Subscribe request {mid} sent for '{entry.topic}'")
        return SessionStatus.OK

    # --- Maintenance Tick ---

    def tick(self):
        """
        One maintenance cycle: reconnect if needed, pump pending input, keep the link alive.
        Never raises; any failure leaves the session ready to try again next tick.
        """
        with self._lock:
            if self.target is None:
                logger.warning("tick() called before initialize(), nothing to do")
                return
            try:
                self._tick()
            except Exception as e:
                logger.exception(f"Unexpected error during MQTT maintenance: {e}")
                self.state.connected = False

    def _tick(self):
        if not self.state.connected:
            status = self.connect()
            if status != SessionStatus.OK:
                logger.warning(f"MQTT reconnect failed ({status.name}), "
                               f"retrying in {self.options.reconnect_delay}s")
                self._sleep(self.options.reconnect_delay)
                return

        client = self._client
        try:
            readable = self._poll(client.socket(), self.options.poll_timeout)
        except OSError as e:
            logger.error(f"MQTT poll error: {e}")
            self.state.connected = False
            return

        if readable:
            rc = client.loop_read()
            if rc != mqtt.MQTT_ERR_SUCCESS:
                logger.error(f"MQTT input error: {mqtt.error_string(rc)}")
                self.state.connected = False
                return
            if not self.state.connected:
                return

        if client.want_write():
            rc = client.loop_write()
            if rc not in IDLE_CODES:
                logger.error(f"MQTT output error: {mqtt.error_string(rc)}")
                self.state.connected = False
                return

        rc = client.loop_misc()
        if rc not in IDLE_CODES:
            logger.error(f"MQTT live error: {mqtt.error_string(rc)}")
            self.state.connected = False

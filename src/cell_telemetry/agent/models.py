"""
Data Models for the MQTT Session and its Payloads.

Defines the status codes returned by the session manager, the connection
target and tuning options, the subscription table, and the JSON payloads
the driver publishes.
"""
from dataclasses import dataclass, field, asdict
import json
import logging
import time
from enum import Enum, IntEnum
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_PORT = 1883
MAX_CLIENT_ID_BYTES = 31 # fits the 32 byte identity buffer of the firmware
AT_LEAST_ONCE = 1


class SessionStatus(IntEnum):
    """Result of a session operation. Zero means success."""
    OK = 0
    NO_CONNECTION = 1
    CONNECT_FAILED = 2
    TIMED_OUT = 3
    CONNECTION_ABORTED = 4
    POLL_ERROR = 5
    SEND_FAILED = 6
    NO_CAPACITY = 7
    PAYLOAD_TOO_LARGE = 8
    INVALID_ARGUMENT = 9


class AgentStatus(str, Enum):
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    ONLINE = "online"
    OFFLINE = "offline"

# --- Session Configuration ---

@dataclass(frozen=True)
class BrokerTarget:
    """Where and as whom the session connects."""
    host: str
    port: int = DEFAULT_PORT
    client_id: str = ""
    username: Optional[str] = None
    password: Optional[str] = None

    @classmethod
    def create(cls, host: str, client_id: str, username: Optional[str] = None,
               password: Optional[str] = None, port: int = DEFAULT_PORT) -> "BrokerTarget":
        """Builds a target, clamping the client identity to MAX_CLIENT_ID_BYTES."""
        raw_id = client_id.encode('utf-8')
        if len(raw_id) > MAX_CLIENT_ID_BYTES:
            client_id = raw_id[:MAX_CLIENT_ID_BYTES].decode('utf-8', errors='ignore')
            logger.warning(f"Client id truncated to {MAX_CLIENT_ID_BYTES} bytes: '{client_id}'")
        return cls(host=host,
                   port=int(port),
                   client_id=client_id,
                   username=username or None,
                   password=password or None)


@dataclass
class SessionOptions:
    """Tuning knobs of the session manager. Times are in seconds."""
    protocol: str = "3.1"
    keepalive: int = 60
    connect_timeout: float = 10.0
    poll_timeout: float = 0.5
    reconnect_delay: float = 5.0
    rx_buffer_size: int = 1024
    tx_buffer_size: int = 1024
    max_subscriptions: int = 10
    resubscribe_on_reconnect: bool = True

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SessionOptions":
        """Reads the `mqtt` section of the loaded config, falling back to defaults."""
        mqtt_conf = config.get('mqtt', {}) or {}
        defaults = cls()
        return cls(
            protocol=str(mqtt_conf.get('protocol', defaults.protocol)),
            keepalive=int(mqtt_conf.get('keepalive', defaults.keepalive)),
            connect_timeout=float(mqtt_conf.get('connect_timeout', defaults.connect_timeout)),
            poll_timeout=float(mqtt_conf.get('poll_timeout', defaults.poll_timeout)),
            reconnect_delay=float(mqtt_conf.get('reconnect_delay', defaults.reconnect_delay)),
            rx_buffer_size=int(mqtt_conf.get('rx_buffer_size', defaults.rx_buffer_size)),
            tx_buffer_size=int(mqtt_conf.get('tx_buffer_size', defaults.tx_buffer_size)),
            max_subscriptions=int(mqtt_conf.get('max_subscriptions', defaults.max_subscriptions)),
            resubscribe_on_reconnect=bool(mqtt_conf.get('resubscribe_on_reconnect',
                                                        defaults.resubscribe_on_reconnect)),
        )

# --- Session State ---

@dataclass
class SessionState:
    """Link state observed by the event dispatcher."""
    connected: bool = False
    handshake_done: bool = False
    connack_code: Optional[int] = None


@dataclass(frozen=True)
class SubscriptionEntry:
    topic: str
    qos: int = AT_LEAST_ONCE


class SubscriptionTable:
    """
    Bounded, ordered collection of the subscriptions the device believes are active.
    Entries are only ever appended; there is no unsubscribe.
    """
    def __init__(self, capacity: int = 10):
        self.capacity = capacity
        self._entries: List[SubscriptionEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[SubscriptionEntry]:
        return iter(list(self._entries))

    @property
    def is_full(self) -> bool:
        return len(self._entries) >= self.capacity

    @property
    def topics(self) -> List[str]:
        return [entry.topic for entry in self._entries]

    def commit(self, entry: SubscriptionEntry):
        if self.is_full:
            raise OverflowError(f"Subscription table is full ({self.capacity} entries)")
        self._entries.append(entry)

# --- Outbound Message (The "Envelope") ---

@dataclass(frozen=True)
class OutboundMessage:
    """
    A message as handed to the protocol client.

    Field names match the keyword arguments of paho's `Client.publish`,
    so `to_publish_args()` can be spread straight into it.
    """
    topic: str
    payload: bytes
    qos: int = AT_LEAST_ONCE
    retain: bool = False

    def to_publish_args(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "payload": self.payload,
            "qos": self.qos,
            "retain": self.retain,
        }

# --- Payloads (The "Letters") ---

@dataclass(frozen=True, kw_only=True)
class BasePayload:
    """Base class for all JSON payloads sent over MQTT."""
    timestamp: float = field(default_factory=time.time)

    def to_json(self) -> str:
        """Converts the object to a JSON string."""
        return json.dumps(asdict(self))

    def to_bytes(self) -> bytes:
        """Converts the object to UTF-8 encoded bytes for MQTT."""
        return self.to_json().encode('utf-8')


@dataclass(frozen=True, kw_only=True)
class DeviceIdentityPayload(BasePayload):
    """Announces which device just came online."""
    client_id: str
    status: AgentStatus = field(default=AgentStatus.ONLINE)


@dataclass(frozen=True, kw_only=True)
class TelemetryPayload(BasePayload):
    """Periodic health report of the agent."""
    client_id: str = ""
    status: AgentStatus = field(default=AgentStatus.RUNNING)
    uptime: float = 0.0
    connected: bool = True

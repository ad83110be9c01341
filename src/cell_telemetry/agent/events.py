"""
Inbound Protocol Event Dispatch.

The protocol client parses buffered input and reports what it found through
callbacks. `bind_client_callbacks` turns those callbacks into `SessionEvent`s,
and `EventDispatcher` applies them to the `SessionState`. The dispatcher only
observes: it never performs I/O and never retries anything.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from cell_telemetry.agent.models import SessionState

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    CONNACK = "connack"
    DISCONNECT = "disconnect"
    PUBLISH = "publish"
    PUBACK = "puback"
    SUBACK = "suback"
    UNSUBACK = "unsuback"


@dataclass(frozen=True)
class SessionEvent:
    kind: EventKind
    result: int = 0
    mid: Optional[int] = None
    topic: Optional[str] = None
    payload_len: int = 0


def reason_value(reason_code) -> int:
    """Flattens paho ReasonCode objects (or lists of them) into a plain int."""
    if isinstance(reason_code, (list, tuple)):
        if not reason_code:
            return 0
        reason_code = reason_code[0]
    return int(getattr(reason_code, 'value', reason_code))


class EventDispatcher:
    """
    Applies inbound events to the session's link state.
    """
    def __init__(self, state: SessionState, rx_buffer_size: int = 1024):
        self.state = state
        self.rx_buffer_size = rx_buffer_size

    def dispatch(self, event: SessionEvent):
        if event.kind is EventKind.CONNACK:
            self.state.connack_code = event.result
            self.state.handshake_done = True
            if event.result != 0:
                logger.error(f"MQTT connect failed, broker answered {event.result}")
                self.state.connected = False
                return
            self.state.connected = True
            logger.info("MQTT connected")

        elif event.kind is EventKind.DISCONNECT:
            logger.warning(f"MQTT disconnected (reason {event.result})")
            self.state.connected = False

        elif event.kind is EventKind.PUBLISH:
            logger.info(f"MQTT publish received on '{event.topic}': "
                        f"topic {len(event.topic or '')} bytes, payload {event.payload_len} bytes")
            if event.payload_len > self.rx_buffer_size:
                logger.warning(f"Inbound payload of {event.payload_len} bytes exceeds "
                               f"the {self.rx_buffer_size} byte receive buffer")

        elif event.kind is EventKind.PUBACK:
            if event.result != 0:
                logger.error(f"MQTT PUBACK error {event.result} for message {event.mid}")
                return
            logger.debug(f"MQTT PUBACK received for message {event.mid}")

        elif event.kind is EventKind.SUBACK:
            if event.result >= 0x80:
                logger.error(f"MQTT SUBACK rejected message {event.mid} ({event.result})")
                return
            logger.debug(f"MQTT SUBACK received for message {event.mid}, granted QoS {event.result}")

        else:
            logger.info(f"MQTT event {event.kind.value}")


def bind_client_callbacks(client, dispatcher: EventDispatcher):
    """Routes paho (callback API v2) callbacks of `client` into `dispatcher`."""

    def on_connect(client, userdata, connect_flags, reason_code, properties):
        dispatcher.dispatch(SessionEvent(EventKind.CONNACK, result=reason_value(reason_code)))

    def on_disconnect(client, userdata, disconnect_flags, reason_code, properties):
        dispatcher.dispatch(SessionEvent(EventKind.DISCONNECT, result=reason_value(reason_code)))

    def on_message(client, userdata, message):
        dispatcher.dispatch(SessionEvent(EventKind.PUBLISH,
                                         mid=message.mid,
                                         topic=message.topic,
                                         payload_len=len(message.payload)))

    def on_publish(client, userdata, mid, reason_code, properties):
        dispatcher.dispatch(SessionEvent(EventKind.PUBACK, result=reason_value(reason_code), mid=mid))

    def on_subscribe(client, userdata, mid, reason_code_list, properties):
        dispatcher.dispatch(SessionEvent(EventKind.SUBACK, result=reason_value(reason_code_list), mid=mid))

    def on_unsubscribe(client, userdata, mid, reason_code_list, properties):
        dispatcher.dispatch(SessionEvent(EventKind.UNSUBACK, result=reason_value(reason_code_list), mid=mid))

    client.on_connect = on_connect
    client.on_disconnect = on_disconnect
    client.on_message = on_message
    client.on_publish = on_publish
    client.on_subscribe = on_subscribe
    client.on_unsubscribe = on_unsubscribe

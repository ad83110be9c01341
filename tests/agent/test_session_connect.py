import pytest

from cell_telemetry.agent.models import SessionOptions, SessionStatus, SubscriptionEntry

"""
Connection Lifecycle Tests.
Covers the handshake, its failure modes (refused, timeout, poll error,
negative acknowledgement), replacement of a live connection and the
re-issue of subscriptions after a reconnect.
"""

def test_initialize_connects_when_broker_acknowledges(make_session):
    """A reachable broker that acknowledges leaves the session connected."""
    harness = make_session()

    status = harness.session.initialize("broker.example", "dev-1", "u", "p", 1884)

    assert status == SessionStatus.OK
    assert status == 0
    assert harness.session.connected is True
    client = harness.factory.created[0]
    assert client.connect_args == ("broker.example", 1884, 60)
    harness.poller.assert_called_once_with(client.sock, 10.0)

def test_connect_timeout_when_broker_never_answers(make_session):
    harness = make_session(readable=False)

    status = harness.session.initialize("broker.example", "dev-1", "u", "p", 1884)

    assert status == SessionStatus.TIMED_OUT
    assert harness.session.connected is False
    client = harness.factory.created[0]
    assert client.read_calls == 0
    # The half-open connection must not be left behind
    assert client.disconnect_calls == 1
    client.sock.close.assert_called_once()

def test_negative_acknowledgement_aborts_and_releases(make_session, make_client):
    rejected = make_client(connack_code=5) # not authorized
    harness = make_session(rejected)

    status = harness.session.initialize("broker.example", "dev-1", "u", "wrong", 1884)

    assert status == SessionStatus.CONNECTION_ABORTED
    assert harness.session.connected is False
    assert harness.session.state.connack_code == 5
    assert rejected.disconnect_calls == 1
    rejected.sock.close.assert_called_once()

def test_refused_connection_reports_connect_failure(make_session, make_client):
    refused = make_client(connect_error=ConnectionRefusedError("refused"))
    harness = make_session(refused)

    status = harness.session.initialize("broker.example", "dev-1", "u", "p", 1884)

    assert status == SessionStatus.CONNECT_FAILED
    assert harness.session.connected is False
    harness.poller.assert_not_called()

def test_poll_error_during_handshake(make_session):
    harness = make_session()
    harness.poller.side_effect = OSError("bad file descriptor")

    status = harness.session.initialize("broker.example", "dev-1", "u", "p", 1884)

    assert status == SessionStatus.POLL_ERROR
    assert harness.session.connected is False

def test_input_error_during_handshake(make_session, make_client):
    broken = make_client(read_rc=7) # MQTT_ERR_CONN_LOST
    harness = make_session(broken)

    status = harness.session.initialize("broker.example", "dev-1", "u", "p", 1884)

    assert status == SessionStatus.CONNECTION_ABORTED
    assert harness.session.connected is False

def test_connect_before_initialize_is_rejected(make_session):
    harness = make_session()

    assert harness.session.connect() == SessionStatus.INVALID_ARGUMENT
    assert harness.factory.created == []

def test_reconnect_while_connected_replaces_the_connection(live_session):
    """Calling connect() on a live session swaps in a fresh client and drops the old one."""
    session = live_session.session
    old_client = live_session.factory.created[0]

    status = session.connect()

    assert status == SessionStatus.OK
    assert session.connected is True
    assert len(live_session.factory.created) == 2
    assert old_client.disconnect_calls == 1
    old_client.sock.close.assert_called_once()

def test_failed_reconnect_never_reports_connected(live_session, make_client):
    session = live_session.session
    live_session.factory.queue.append(make_client(connect_error=OSError("network unreachable")))

    status = session.connect()

    assert status == SessionStatus.CONNECT_FAILED
    assert session.connected is False

def test_client_id_is_clamped_to_31_bytes(make_session):
    harness = make_session()

    harness.session.initialize("broker.example", "x" * 40, "u", "p")

    assert harness.session.target.client_id == "x" * 31
    assert harness.session.target.port == 1883

def test_subscriptions_are_reissued_after_reconnect(live_session):
    session = live_session.session
    assert session.subscribe("a/b") == SessionStatus.OK
    assert session.subscribe("c/d") == SessionStatus.OK

    assert session.connect() == SessionStatus.OK

    new_client = live_session.factory.created[-1]
    assert new_client.subscribed == [("a/b", 1), ("c/d", 1)]
    assert len(session.subscriptions) == 2

def test_resubscribe_can_be_disabled(make_session):
    harness = make_session(options=SessionOptions(resubscribe_on_reconnect=False))
    session = harness.session
    session.initialize("broker.example", "dev-1", "u", "p", 1884)
    session.subscribe("a/b")

    session.connect()

    assert harness.factory.created[-1].subscribed == []

def test_first_connect_does_not_resubscribe(make_session):
    """Nothing is re-issued on the very first handshake, even if the table was prefilled."""
    harness = make_session()
    harness.session.subscriptions.commit(SubscriptionEntry(topic="pre/filled"))

    harness.session.initialize("broker.example", "dev-1")

    assert harness.factory.created[0].subscribed == []

def test_close_disconnects(live_session):
    session = live_session.session
    client = live_session.factory.created[0]

    session.close()

    assert session.connected is False
    assert client.disconnect_calls == 1
    # A second close has nothing left to release
    session.close()
    assert client.disconnect_calls == 1

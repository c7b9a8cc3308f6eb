"""
Metrics Agent - Connection Status Tests
"""

import threading

import pytest

from metrics_agent.delivery.status import ConnectionState, ConnectionStatus, StatusHolder


class TestConnectionState:
    """Test ConnectionState enum."""

    def test_state_values(self):
        assert ConnectionState.DISCONNECTED.value == "disconnected"
        assert ConnectionState.CONNECTION_LOST.value == "connection_lost"
        assert ConnectionState.ERROR.value == "error"

    def test_describe(self):
        assert ConnectionStatus(ConnectionState.CONNECTED).describe() == "Connected"
        assert (
            ConnectionStatus(ConnectionState.CONNECTION_LOST, "timeout").describe()
            == "Connection lost: timeout"
        )


class TestStatusHolder:
    """Test the connection state machine."""

    def test_initial_state(self):
        assert StatusHolder().current.state == ConnectionState.DISCONNECTED

    def test_happy_path(self):
        holder = StatusHolder()

        assert holder.transition(ConnectionState.CONNECTING)
        assert holder.transition(ConnectionState.CONNECTED)
        assert holder.transition(ConnectionState.RECONNECTING)
        assert holder.transition(ConnectionState.CONNECTED)
        assert holder.transition(ConnectionState.DISCONNECTED)
        assert holder.current == ConnectionStatus(ConnectionState.DISCONNECTED)

    def test_reconnect_exhausted(self):
        holder = StatusHolder()
        for state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED, ConnectionState.RECONNECTING):
            holder.transition(state)

        assert holder.transition(ConnectionState.CONNECTION_LOST, "gave up")
        assert holder.current.message == "gave up"

    @pytest.mark.parametrize("start,target", [
        (ConnectionState.DISCONNECTED, ConnectionState.CONNECTED),
        (ConnectionState.DISCONNECTED, ConnectionState.RECONNECTING),
        (ConnectionState.CONNECTING, ConnectionState.RECONNECTING),
        (ConnectionState.CONNECTED, ConnectionState.CONNECTION_LOST),
    ])
    def test_disallowed_transitions_are_ignored(self, start, target):
        holder = StatusHolder()
        path = {
            ConnectionState.DISCONNECTED: [],
            ConnectionState.CONNECTING: [ConnectionState.CONNECTING],
            ConnectionState.CONNECTED: [ConnectionState.CONNECTING, ConnectionState.CONNECTED],
        }[start]
        for state in path:
            holder.transition(state)

        assert holder.transition(target) is False
        assert holder.current.state == start

    @pytest.mark.parametrize("path", [
        [],
        [ConnectionState.CONNECTING],
        [ConnectionState.CONNECTING, ConnectionState.CONNECTED],
        [ConnectionState.CONNECTING, ConnectionState.CONNECTED, ConnectionState.RECONNECTING],
    ])
    def test_error_reachable_from_any_state(self, path):
        holder = StatusHolder()
        for state in path:
            holder.transition(state)

        assert holder.transition(ConnectionState.ERROR, "tls handshake failed")
        assert holder.current == ConnectionStatus(ConnectionState.ERROR, "tls handshake failed")

    def test_error_allows_new_connect(self):
        holder = StatusHolder()
        holder.transition(ConnectionState.ERROR, "x")

        assert holder.transition(ConnectionState.CONNECTING)
        assert holder.current.message is None

    def test_listeners_receive_transitions(self):
        holder = StatusHolder()
        seen = []
        holder.add_listener(lambda previous, current: seen.append((previous.state, current.state)))

        holder.transition(ConnectionState.CONNECTING)
        holder.transition(ConnectionState.RECONNECTING)

        assert seen == [(ConnectionState.DISCONNECTED, ConnectionState.CONNECTING)]

    def test_listener_errors_are_contained(self):
        holder = StatusHolder()

        def broken(previous, current):
            raise RuntimeError("listener bug")

        holder.add_listener(broken)

        assert holder.transition(ConnectionState.CONNECTING)
        assert holder.current.state == ConnectionState.CONNECTING

    def test_concurrent_readers_see_whole_statuses(self):
        """Readers never observe a status that was not published."""
        holder = StatusHolder()
        valid = {
            ConnectionStatus(ConnectionState.DISCONNECTED),
            ConnectionStatus(ConnectionState.CONNECTING),
            ConnectionStatus(ConnectionState.CONNECTED),
            ConnectionStatus(ConnectionState.RECONNECTING),
        }
        observed = []
        done = threading.Event()

        def reader():
            while not done.is_set():
                observed.append(holder.current)

        thread = threading.Thread(target=reader)
        thread.start()
        holder.transition(ConnectionState.CONNECTING)
        for _ in range(200):
            holder.transition(ConnectionState.CONNECTED)
            holder.transition(ConnectionState.RECONNECTING)
        done.set()
        thread.join()

        assert set(observed) <= valid

import pytest
from redis import exceptions as redis_exceptions

from clusterkv.crc import key_slot
from clusterkv.exceptions import (
    AmbiguousNodeError,
    ClusterDownError,
    CommandError,
    ConnectionError,
    ConsistencyError,
)

from .conftest import _get_client, captured_commands


def other_primary(cluster, node):
    return next(n for n in cluster.primaries if n is not node)


class TestTransaction:
    def test_multi_exec(self, r, cluster):
        def block(tx):
            tx.call("SET", "{user}name", "ada")
            tx.call("INCR", "{user}visits")

        assert r.multi(block) == [b"OK", 1]
        assert captured_commands(r) == ["MULTI", "SET", "INCR", "EXEC"]
        assert cluster.data[b"{user}name"] == b"ada"
        node_names = {node for node, _ in captured_commands(r, names_only=False)}
        assert node_names == {cluster.owner("user").name}

    def test_empty_block_sends_nothing(self, r):
        assert r.multi(lambda tx: None) == []
        assert captured_commands(r) == []

    def test_empty_block_with_watch(self, r):
        assert r.multi(lambda tx: None, watch=["foo"]) == []
        assert captured_commands(r) == ["WATCH", "MULTI", "EXEC"]

    def test_callbacks(self, r):
        r.call("SET", "{a}1", "x")
        result = r.multi(lambda tx: tx.call("GET", "{a}1", callback=bytes.decode))
        assert result == ["x"]

    def test_cross_slot(self, r, cluster):
        def block(tx):
            tx.call("SET", "foo", "1")
            tx.call("SET", "hello", "2")

        with pytest.raises(ConsistencyError):
            r.multi(block)
        assert captured_commands(r) == []
        assert cluster.data == {}

    def test_keyless_block(self, r):
        with pytest.raises(ConsistencyError):
            r.multi(lambda tx: tx.call("PING"))
        assert captured_commands(r) == []

    def test_watch_slot_mismatch(self, r):
        with pytest.raises(ConsistencyError):
            r.multi(lambda tx: tx.call("SET", "hello", "1"), watch=["foo"])
        assert captured_commands(r) == ["WATCH", "UNWATCH"]

    def test_watch_keys_cross_slot(self, r):
        with pytest.raises(ConsistencyError):
            r.multi(lambda tx: None, watch=["foo", "hello"])
        assert captured_commands(r) == []

    def test_transaction_commands_inside_block(self, r):
        with pytest.raises(AmbiguousNodeError):
            r.multi(lambda tx: tx.call("MULTI"), watch=["foo"])
        assert captured_commands(r) == ["WATCH", "UNWATCH"]

    def test_unknown_command_aborts(self, r, cluster):
        def block(tx):
            tx.call("SET", "{a}1", "x")
            tx.call("NOSUCHCOMMAND", "{a}2")

        with pytest.raises(CommandError, match="unknown command"):
            r.multi(block)
        assert b"{a}1" not in cluster.data

    def test_runtime_error_commits_the_rest(self, r, cluster):
        r.call("SET", "{a}text", "abc")

        def block(tx):
            tx.call("INCR", "{a}text")
            tx.call("SET", "{a}1", "x")

        with pytest.raises(CommandError, match="not an integer"):
            r.multi(block)
        assert cluster.data[b"{a}1"] == b"x"

    def test_collect_errors(self, r, cluster):
        r.call("SET", "{a}text", "abc")

        def block(tx):
            tx.call("INCR", "{a}text")
            tx.call("SET", "{a}1", "x")

        results = r.multi(block, raise_on_error=False)
        assert isinstance(results[0], CommandError)
        assert results[0].node.name == cluster.owner("a").name
        assert results[1] == b"OK"


class TestWatch:
    def test_watch(self, r, cluster):
        r.call("SET", "{user}balance", "10")

        def block(tx):
            tx.call("SET", "{user}balance", "20")

        assert r.multi(block, watch=["{user}balance"]) == [b"OK"]
        assert captured_commands(r)[1:] == ["WATCH", "MULTI", "SET", "EXEC"]
        node_names = {node for node, _ in captured_commands(r, names_only=False)[1:]}
        assert node_names == {cluster.owner("user").name}

    def test_retried_when_watched_key_changes(self, r, cluster):
        other = _get_client(cluster, capture=False)
        attempts = []

        def block(tx):
            attempts.append(1)
            if len(attempts) == 1:
                other.call("SET", "{user}balance", "changed")
            tx.call("SET", "{user}balance", "mine")

        assert r.multi(block, watch=["{user}balance"]) == [b"OK"]
        assert len(attempts) == 2
        assert cluster.data[b"{user}balance"] == b"mine"
        other.close()

    def test_gives_up_after_retries(self, cluster):
        r = _get_client(cluster, watch_retry_attempts=2)
        other = _get_client(cluster, capture=False)
        attempts = []

        def block(tx):
            attempts.append(1)
            other.call("INCR", "{user}counter")
            tx.call("SET", "{user}counter", "mine")

        assert r.multi(block, watch=["{user}counter"]) is None
        assert len(attempts) == 3
        assert cluster.data[b"{user}counter"] == b"3"
        other.close()
        r.close()

    def test_block_error_unwatches(self, r):
        def block(tx):
            tx.call("SET", "foo", "1")
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            r.multi(block, watch=["foo"])
        assert captured_commands(r) == ["WATCH", "UNWATCH"]

    def test_lost_connection_is_not_retried(self, r, cluster):
        port = cluster.owner("foo").port

        def block(tx):
            cluster.fail(port)
            tx.call("SET", "foo", "1")

        with pytest.raises(ConnectionError):
            r.multi(block, watch=["foo"])
        assert captured_commands(r) == ["WATCH", "MULTI", "SET", "EXEC"]
        assert b"foo" not in cluster.data

    def test_reconnect_after_watch_fails(self, r, cluster):
        owner = cluster.owner("foo")

        def block(tx):
            # the socket closes quietly, the next command would reconnect
            for connection in list(cluster.connections):
                if connection.node is owner:
                    connection.disconnect()
            tx.call("SET", "foo", "1")

        with pytest.raises(ConnectionError, match="lost after WATCH"):
            r.multi(block, watch=["foo"])
        assert ("MULTI",) not in owner.received
        assert b"foo" not in cluster.data

    def test_guard_removed_after_transaction(self, r, cluster):
        r.multi(lambda tx: tx.call("SET", "foo", "1"), watch=["foo"])
        for connection in list(cluster.connections):
            connection.disconnect()
        assert r.call("GET", "foo") == b"1"

    def test_watch_via_call(self, r):
        result = r.call("WATCH", "{a}1", "{a}2", callback=lambda tx: tx.call("GET", "{a}1"))
        assert result == [None]


class TestRedirects:
    def test_moved_before_watch(self, r, cluster):
        r.call("SET", "foo", "bar")
        old = cluster.owner("foo")
        new = other_primary(cluster, old)
        cluster.move_slot(key_slot("foo"), new.port)

        result = r.multi(lambda tx: tx.call("GET", "foo"), watch=["foo"])
        assert result == [b"bar"]
        assert r.find_node_key("foo") == new.name

    def test_moved_while_queuing(self, r, cluster):
        r.call("SET", "foo", "bar")
        old = cluster.owner("foo")
        new = other_primary(cluster, old)
        cluster.move_slot(key_slot("foo"), new.port)

        assert r.multi(lambda tx: tx.call("SET", "foo", "baz")) == [b"OK"]
        assert r.find_node_key("foo") == new.name
        assert cluster.data[b"foo"] == b"baz"

    def test_ask_while_queuing(self, r, cluster):
        old = cluster.owner("foo")
        new = other_primary(cluster, old)
        cluster.migrate_slot(key_slot("foo"), new.port)

        assert r.multi(lambda tx: tx.call("SET", "foo", "baz")) == [b"OK"]
        assert ("ASKING",) in new.received
        assert r.find_node_key("foo") == old.name

    def test_redirects_are_bounded(self, cluster):
        r = _get_client(cluster, max_redirects=2)
        slot = key_slot("foo")
        cluster.interceptor = lambda node, args: (
            redis_exceptions.MovedError(f"{slot} {node.name}")
            if args[0] == "WATCH"
            else None
        )
        with pytest.raises(ClusterDownError):
            r.multi(lambda tx: None, watch=["foo"])
        assert captured_commands(r).count("WATCH") == 3
        r.close()

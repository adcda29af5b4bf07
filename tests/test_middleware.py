from clusterkv import Middleware
from clusterkv.middleware import MiddlewareChain

from .conftest import _get_client, captured_commands


class Tagging(Middleware):
    def call(self, args, call_next):
        self.config.custom.setdefault("order", []).append(type(self).__name__)
        return call_next(args)

    def call_pipelined(self, commands, call_next):
        self.config.custom.setdefault("order", []).append(type(self).__name__)
        return call_next(commands)


class Outer(Tagging):
    pass


class Inner(Tagging):
    pass


class Upper(Middleware):
    "Rewrites the replies of GET"

    def call(self, args, call_next):
        reply = call_next(args)
        if args[0] == "GET" and reply is not None:
            return reply.upper()
        return reply


class TestMiddlewareChain:
    def test_first_listed_is_outermost(self):
        config = type("Config", (), {"custom": {}})()
        chain = MiddlewareChain([Outer, Inner], node=None, config=config)
        assert chain.call(("PING",), lambda args: b"PONG") == b"PONG"
        assert chain.call_pipelined([("PING",)], lambda commands: [b"PONG"]) == [b"PONG"]
        assert config.custom["order"] == ["Outer", "Inner", "Outer", "Inner"]

    def test_empty_chain(self):
        chain = MiddlewareChain([], node=None, config=None)
        assert not chain
        assert chain.call(("PING",), lambda args: b"PONG") == b"PONG"


class TestClientMiddlewares:
    def test_one_instance_per_node(self, r, cluster):
        instances = {
            node.name: node.middlewares.middlewares[0]
            for node in r.nodes_manager.get_primaries()
        }
        assert len({id(m) for m in instances.values()}) == len(cluster.primaries)
        assert all(m.node.name == name for name, m in instances.items())

    def test_reply_rewritten(self, cluster):
        r = _get_client(cluster, middlewares=[Upper])
        r.call("SET", "foo", "bar")
        assert r.call("GET", "foo") == b"BAR"
        r.close()

    def test_sees_every_command(self, r):
        r.call("SET", "foo", "bar")
        r.pipelined(lambda pipe: pipe.call("GET", "foo").call("GET", "hello"))
        r.multi(lambda tx: tx.call("GET", "foo"))
        assert captured_commands(r) == ["SET", "GET", "GET", "MULTI", "GET", "EXEC"]

import logging

import pytest

from clusterkv import ClusterClient, ClusterConfig, Middleware
from clusterkv.utils import safe_str
from tests.fake_cluster import FakeCluster


class CommandCapture(Middleware):
    "Records every command as ``(node name, [args])`` in ``custom['captured']``"

    def _record(self, args):
        self.config.custom.setdefault("captured", []).append(
            (self.node.name, [safe_str(arg) for arg in args])
        )

    def call(self, args, call_next):
        self._record(args)
        return call_next(args)

    def call_pipelined(self, commands, call_next):
        for args in commands:
            self._record(args)
        return call_next(commands)


def _get_client(cluster, capture=True, **kwargs):
    kwargs.setdefault("nodes", cluster.startup_nodes)
    kwargs.setdefault("connection_pool_class", cluster.pool_class)
    if capture:
        kwargs.setdefault("middlewares", [CommandCapture])
    return ClusterClient(ClusterConfig(**kwargs))


def captured_commands(client, names_only=True):
    """
    The commands the client sent since the last ``reset_captured``, without
    the ones used to load the topology.
    """
    captured = [
        (node, args)
        for node, args in client.config.custom.get("captured", [])
        if args[:2] != ["CLUSTER", "SLOTS"] and args[:1] != ["COMMAND"]
    ]
    if names_only:
        return [args[0].upper() for _, args in captured]
    return captured


def reset_captured(client):
    client.config.custom["captured"] = []


@pytest.fixture()
def cluster():
    return FakeCluster()


@pytest.fixture()
def r(cluster):
    client = _get_client(cluster)
    # load the topology so only the commands of the test are captured
    client.refresh()
    reset_captured(client)
    yield client
    client.close()


@pytest.fixture(autouse=True)
def _log_level(caplog):
    caplog.set_level(logging.DEBUG, logger="clusterkv")


# (replicas per primary, client options) the end-to-end suite runs with
CLIENT_MODES = {
    "primary_only": (0, {}),
    "scale_read_random": (2, {"replica": True, "replica_affinity": "random"}),
    "scale_read_random_with_primary": (
        2,
        {"replica": True, "replica_affinity": "random_with_primary"},
    ),
    "scale_read_latency": (2, {"replica": True, "replica_affinity": "latency"}),
    "pooled": (0, {"pool": {"size": 2, "timeout": 1}}),
}


@pytest.fixture(params=list(CLIENT_MODES))
def client_mode(request):
    return CLIENT_MODES[request.param]


@pytest.fixture()
def mode_cluster(client_mode):
    replicas_per_primary, _ = client_mode
    return FakeCluster(replicas_per_primary=replicas_per_primary)


@pytest.fixture()
def mode_r(mode_cluster, client_mode):
    _, options = client_mode
    client = _get_client(mode_cluster, **options)
    client.refresh()
    reset_captured(client)
    yield client
    client.close()

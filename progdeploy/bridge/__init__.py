"""Bridge layer between progdeploy and the remote cluster.

Modules
-------
gateway
    The ``ChainGateway`` protocol the deployment core depends on, plus
    structural classification of cluster transaction errors.
rpc_gateway
    ``JsonRpcChainGateway`` — JSON-RPC 2.0 over HTTP(S) via ``requests``.
memory_gateway
    ``InMemoryChainGateway`` — a simulated cluster for dry-run rehearsals.
"""

from progdeploy.bridge.gateway import ChainGateway, classify_transaction_error
from progdeploy.bridge.memory_gateway import InMemoryChainGateway
from progdeploy.bridge.rpc_gateway import JsonRpcChainGateway, resolve_cluster_url

__all__ = [
    "ChainGateway",
    "InMemoryChainGateway",
    "JsonRpcChainGateway",
    "classify_transaction_error",
    "resolve_cluster_url",
]

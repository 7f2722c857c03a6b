"""RPC layer: JSON-RPC transport and per-chain endpoint failover."""

from chain_custody.rpc.manager import (
    EndpointHealth,
    EndpointSnapshot,
    RpcEndpoint,
    RpcFailoverManager,
    RpcResponse,
)
from chain_custody.rpc.transport import HttpxTransport, JsonRpcTransport, parse_response

__all__ = [
    "EndpointHealth",
    "EndpointSnapshot",
    "HttpxTransport",
    "JsonRpcTransport",
    "RpcEndpoint",
    "RpcFailoverManager",
    "RpcResponse",
    "parse_response",
]

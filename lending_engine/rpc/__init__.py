"""JSON-RPC access to the lending protocol."""
from .client import JsonRpcClient
from .gateway import RpcLendingGateway

__all__ = ["JsonRpcClient", "RpcLendingGateway"]

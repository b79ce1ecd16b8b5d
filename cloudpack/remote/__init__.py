"""Remote shell access: command execution, uploads and reachability."""

from cloudpack.remote.gate import ensure_reachable
from cloudpack.remote.ssh import ExecutionResult, RemoteSession, SSHExecutor

__all__ = ["ExecutionResult", "RemoteSession", "SSHExecutor", "ensure_reachable"]

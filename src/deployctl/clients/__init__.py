"""Clients for hosts, files and container engines."""

from deployctl.clients.containers import ContainerManager
from deployctl.clients.executor import Executor, LocalExecutor, SSHExecutor
from deployctl.clients.remote_fs import RemoteFileSystem

__all__ = [
    "ContainerManager",
    "Executor",
    "LocalExecutor",
    "RemoteFileSystem",
    "SSHExecutor",
]

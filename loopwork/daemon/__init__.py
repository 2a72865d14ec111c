"""Daemon service and IPC control surface"""

from .ipc import IPCServer, IPCClient
from .service import DaemonService

__all__ = ["IPCServer", "IPCClient", "DaemonService"]

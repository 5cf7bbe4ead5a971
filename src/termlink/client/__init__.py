"""Host and viewer programs.

Public API:
    HostSession -- shares a local shell
    ViewerSession -- mirrors a host's shell
    DeviceStore -- device id and token persistence
    RelayConnection -- reconnecting control WebSocket
    PersistentShell -- pty-backed shell run by the host
"""

from termlink.client.host import HostSession
from termlink.client.relay import RelayConnection
from termlink.client.session import ClientSession
from termlink.client.shell import PersistentShell, ShellError
from termlink.client.store import DeviceStore
from termlink.client.viewer import ViewerSession

__all__ = [
    "ClientSession",
    "DeviceStore",
    "HostSession",
    "PersistentShell",
    "RelayConnection",
    "ShellError",
    "ViewerSession",
]

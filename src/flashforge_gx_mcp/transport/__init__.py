"""Transport layer: TCP control session and network discovery."""

from .tcp_connection import ConnectionState, ProtocolConnection, DEFAULT_PORT
from .discovery import scan_subnet

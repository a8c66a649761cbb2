"""
DLT Sandbox Network

In-process message transport with random delay and packet loss.
"""

from dltsim.network.message import DroppedMessage, Message, MessageType
from dltsim.network.network import Network, NetworkStats

__all__ = [
    "DroppedMessage",
    "Message",
    "MessageType",
    "Network",
    "NetworkStats",
]

from .client import DispatchApiClient
from .kingschat import KingsChatSender

__all__ = [
    "DispatchApiClient",
    "KingsChatSender",
]

"""Live document feeds and subscription lifecycle."""

from globalfam.live.document import LiveDocument, Subscription, SubscriptionRegistry
from globalfam.live.feeds import FriendListFeed
from globalfam.live.memory import MemoryDocumentSource, MemoryIdentityProvider, MemoryStatusSource
from globalfam.live.observable import Observable

__all__ = [
    "FriendListFeed",
    "LiveDocument",
    "MemoryDocumentSource",
    "MemoryIdentityProvider",
    "MemoryStatusSource",
    "Observable",
    "Subscription",
    "SubscriptionRegistry",
]

"""Connection state shared by a client's requests."""

from dataclasses import dataclass
from enum import Enum


class Freshness(str, Enum):
    """How the most recent read was satisfied."""

    FRESH = "fresh"  # network round trip or fresh cache hit
    CACHED = "cached"  # 304 Not Modified
    STALE = "stale"  # expired entry served while revalidating
    OFFLINE = "offline"  # network failed, answered from the offline store


@dataclass
class ConnectionState:
    online: bool = True
    last_freshness: Freshness = Freshness.FRESH

    def mark_online(self) -> None:
        self.online = True

    def mark_offline(self) -> None:
        self.online = False

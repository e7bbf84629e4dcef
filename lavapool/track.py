"""Playable track handle."""

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass(frozen=True)
class Track:
    """An encoded Lavalink track.

    ``encoded`` is the opaque base64 blob returned by the node's track
    loading endpoint; it is sent back verbatim and never decoded here.
    """
    encoded: str
    duration: int  # milliseconds
    info: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Track":
        """Parse from a loadtracks result entry ({"track": ..., "info": {...}})."""
        info = data.get("info") or {}
        return cls(
            encoded=data.get("encoded") or data["track"],
            duration=info.get("length", 0),
            info=info,
        )

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Revision:
    """One revision of the child project. Identity is ``id``."""

    id: str
    display_id: str = ""
    description: str = ""
    author: str = ""
    timestamp: str = ""  # ISO-8601 UTC
    url: str = ""
    dependencies: dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    def __str__(self) -> str:
        return self.display_id or self.id[:12]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "display_id": self.display_id,
            "description": self.description,
            "author": self.author,
            "timestamp": self.timestamp,
            "url": self.url,
            "dependencies": dict(self.dependencies),
        }

    @classmethod
    def from_dict(cls, d: dict) -> Revision:
        return cls(
            id=d["id"],
            display_id=d.get("display_id", ""),
            description=d.get("description", ""),
            author=d.get("author", ""),
            timestamp=d.get("timestamp", ""),
            url=d.get("url", ""),
            dependencies=dict(d.get("dependencies", {})),
        )

"""Log fragment and batch item models."""

from dataclasses import dataclass, field
from typing import Any, Optional

FRAGMENT_NAMES = ("edge", "policy", "backend")


@dataclass
class LogFragments:
    """The three partial views of one request, each decoded from JSON.

    A fragment is None when the upstream stage has not (yet) written it.
    """

    edge: Optional[dict] = None
    policy: Optional[dict] = None
    backend: Optional[dict] = None

    @property
    def is_empty(self) -> bool:
        return self.edge is None and self.policy is None and self.backend is None

    @property
    def response_status(self) -> Optional[int]:
        if self.edge is None:
            return None
        return self.edge.get("res_status")

    def presence(self) -> dict:
        """Flags describing which fragments are present, for log context."""
        return {
            "has_edge": self.edge is not None,
            "has_policy": self.policy is not None,
            "has_backend": self.backend is not None,
        }


@dataclass
class BatchItem:
    job: Any
    log_id: str
    record: dict = field(default_factory=dict)


def cache_key(log_id: str) -> str:
    return f"log:{log_id}"

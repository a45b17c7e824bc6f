# agent/models.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from runway.model import Event


@dataclass
class Lease:
    """Represents a run lease from the API (ClaimedRun response)."""
    run_id: str
    repo_url: str
    ref: str
    event_json: Dict[str, Any]
    pipeline_json: Dict[str, Any]  # pipeline snapshot taken when the event was admitted
    lease_expires_at: str  # ISO format timestamp

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Lease:
        """Create Lease from API ClaimedRun response dictionary."""
        return cls(
            run_id=data["run_id"],
            repo_url=data["repo_url"],
            ref=data.get("ref", "HEAD"),
            event_json=data["event"],
            pipeline_json=data["pipeline"],
            lease_expires_at=data["lease_expires_at"],
        )

    @property
    def event(self) -> Event:
        return Event.from_dict(self.event_json)

    @property
    def pipeline_name(self) -> str:
        return str(self.pipeline_json.get("name", "pipeline"))

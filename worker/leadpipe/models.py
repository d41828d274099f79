"""Core data models shared by the pipeline stages."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from leadpipe.core.errors import MalformedMessage


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class SearchQuery:
    text_query: str
    included_type: Optional[str] = None


@dataclass(slots=True)
class Campaign:
    id: str
    name: str
    queries_ref: Optional[str] = None
    queries_count: int = 0
    queries_confirmed_at: Optional[datetime] = None
    max_results_per_search: int = 60
    max_total_requests: Optional[int] = None
    enable_scraping: bool = True
    enable_scoring: bool = True
    skip_cached_searches: bool = False

    @property
    def is_ready(self) -> bool:
        return bool(self.queries_ref) and self.queries_confirmed_at is not None and self.queries_count > 0


@dataclass(slots=True)
class CampaignRun:
    id: str
    campaign_id: str
    status: RunStatus = RunStatus.RUNNING
    queries_total: int = 0
    queries_executed: int = 0
    leads_found: int = 0
    duplicates_skipped: int = 0
    error_count: int = 0
    error_messages: List[str] = field(default_factory=list)
    degraded: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "campaignId": self.campaign_id,
            "status": self.status.value,
            "queriesTotal": self.queries_total,
            "queriesExecuted": self.queries_executed,
            "leadsFound": self.leads_found,
            "duplicatesSkipped": self.duplicates_skipped,
            "errorCount": self.error_count,
            "errorMessages": list(self.error_messages),
            "degraded": self.degraded,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(slots=True)
class ProgressDelta:
    """Counter increments reported by a worker; applied in one atomic update."""

    queries_executed: int = 0
    leads_found: int = 0
    duplicates_skipped: int = 0
    error_count: int = 0
    error_messages: List[str] = field(default_factory=list)

    def validate(self) -> None:
        for name in ("queries_executed", "leads_found", "duplicates_skipped", "error_count"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} delta must not be negative")


@dataclass(slots=True)
class Lead:
    id: str
    place_id: str
    name: str
    campaign_id: Optional[str] = None
    campaign_run_id: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    business_type: Optional[str] = None
    scraped_content: Optional[Dict[str, Any]] = None
    scraped_at: Optional[datetime] = None
    scrape_error: Optional[str] = None
    qualification_score: Optional[int] = None
    qualification_notes: Optional[str] = None
    scored_at: Optional[datetime] = None


@dataclass(slots=True)
class ScoreResult:
    score: int
    notes: str

    def validate(self) -> None:
        if isinstance(self.score, bool) or not isinstance(self.score, int):
            raise ValueError(f"score must be an integer, got {self.score!r}")
        if not 0 <= self.score <= 100:
            raise ValueError(f"score must be within 0-100, got {self.score}")
        if not isinstance(self.notes, str) or not self.notes.strip():
            raise ValueError("notes must be a non-empty string")


# ---------- Queue payloads ----------


@dataclass(frozen=True, slots=True)
class ScrapeMessage:
    lead_id: str
    campaign_id: str
    place_id: Optional[str] = None
    kind: str = field(default="scrape", init=False)


@dataclass(frozen=True, slots=True)
class ScoreMessage:
    lead_id: str
    campaign_id: str
    place_id: Optional[str] = None
    kind: str = field(default="score", init=False)


PipelineMessage = Union[ScrapeMessage, ScoreMessage]

_MESSAGE_TYPES = {"scrape": ScrapeMessage, "score": ScoreMessage}


def encode_message(message: PipelineMessage) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "kind": message.kind,
        "leadId": message.lead_id,
        "campaignId": message.campaign_id,
    }
    if message.place_id:
        body["placeId"] = message.place_id
    return body


def decode_message(body: Union[str, bytes, Dict[str, Any]]) -> PipelineMessage:
    """Parse a queue body into its tagged message type."""
    if isinstance(body, (str, bytes)):
        try:
            body = json.loads(body)
        except ValueError as exc:
            raise MalformedMessage(f"message body is not JSON: {exc}") from exc
    if not isinstance(body, dict):
        raise MalformedMessage("message body must be a JSON object")

    message_type = _MESSAGE_TYPES.get(body.get("kind"))
    if message_type is None:
        raise MalformedMessage(f"unknown message kind: {body.get('kind')!r}")

    lead_id = body.get("leadId")
    campaign_id = body.get("campaignId")
    if not lead_id or not campaign_id:
        raise MalformedMessage("leadId and campaignId are required")
    return message_type(lead_id=str(lead_id), campaign_id=str(campaign_id), place_id=body.get("placeId"))

"""Lead qualification via an OpenAI-compatible chat model."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional

from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI, OpenAIError, RateLimitError

from leadpipe.core.config import Settings, get_settings
from leadpipe.core.errors import PermanentError, ScoringFailed, TransientError
from leadpipe.models import Lead, ScoreResult

logger = logging.getLogger(__name__)

# Keeps the prompt well inside the model context window.
MAX_CONTENT_CHARS = 60_000
SDK_MAX_RETRIES = 2

SYSTEM_PROMPT = """You qualify small and mid-sized businesses as acquisition leads.
Judge business quality (tenure, team, services, reputation, website quality)
and how likely the owner is to sell. Respond with ONLY a JSON object:
{"score": <integer 0-100>, "notes": "<2-3 sentence rationale>"}"""

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def build_lead_summary(lead: Lead) -> Dict[str, Any]:
    return {
        "name": lead.name,
        "business_type": lead.business_type,
        "city": lead.city,
        "state": lead.state,
        "phone": lead.phone,
        "website": lead.website,
        "rating": lead.rating,
        "review_count": lead.review_count,
    }


def build_prompt(lead: Lead, scraped_content: Optional[Dict[str, Any]]) -> str:
    parts = ["## Lead Data", json.dumps(build_lead_summary(lead), indent=2)]
    if scraped_content:
        structured = {k: v for k, v in scraped_content.items() if k != "markdown"}
        parts += ["## Extracted Website Facts", json.dumps(structured, indent=2, default=str)]
        markdown = scraped_content.get("markdown")
        if markdown:
            parts += ["## Raw Website Content", markdown[:MAX_CONTENT_CHARS]]
    else:
        parts.append("No website content is available for this lead.")
    return "\n\n".join(parts)


def parse_score(text: str) -> ScoreResult:
    """Decode the model's JSON reply; tolerates prose around the object."""
    try:
        payload = json.loads(text)
    except ValueError:
        match = _JSON_OBJECT.search(text or "")
        if not match:
            raise ScoringFailed(f"model reply is not JSON: {text[:200]!r}")
        try:
            payload = json.loads(match.group(0))
        except ValueError as exc:
            raise ScoringFailed(f"model reply is not JSON: {exc}") from exc

    raw_score = payload.get("score")
    try:
        score = int(round(float(raw_score)))
    except (TypeError, ValueError) as exc:
        raise ScoringFailed(f"model reply has no numeric score: {raw_score!r}") from exc
    result = ScoreResult(score=score, notes=str(payload.get("notes") or "").strip())
    try:
        result.validate()
    except ValueError as exc:
        raise ScoringFailed(str(exc)) from exc
    return result


class ScoringModel:
    """Thin wrapper around the OpenAI client that returns a validated score."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[OpenAI] = None) -> None:
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            if not self.settings.openai_api_key:
                raise OpenAIError("OPENAI_API_KEY is not set; cannot score leads.")
            # SDK retries back off within one delivery; queue redelivery covers longer outages.
            self._client = OpenAI(
                api_key=self.settings.openai_api_key,
                timeout=self.settings.score_timeout_s,
                max_retries=SDK_MAX_RETRIES,
            )
        return self._client

    def score(self, lead: Lead, scraped_content: Optional[Dict[str, Any]]) -> ScoreResult:
        prompt = build_prompt(lead, scraped_content)
        try:
            response = self.client.chat.completions.create(
                model=self.settings.scoring_model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
                temperature=0.1,
                max_tokens=500,
            )
        except (APITimeoutError, APIConnectionError, RateLimitError) as exc:
            raise TransientError(f"scoring model unavailable: {exc}") from exc
        except APIStatusError as exc:
            if exc.status_code >= 500:
                raise TransientError(f"scoring model error {exc.status_code}: {exc}") from exc
            raise PermanentError(f"scoring model rejected request ({exc.status_code}): {exc}") from exc

        text = response.choices[0].message.content or ""
        result = parse_score(text)
        logger.info("Scored lead %s: %d", lead.id, result.score)
        return result

"""Utilities for transforming Google Places responses into lead rows."""

import logging
from typing import Any, Dict, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)


def parse_city_state(address_components: Iterable[Dict[str, Any]]) -> Tuple[Optional[str], Optional[str]]:
    city = None
    state = None
    for component in address_components or []:
        types = set(component.get("types", []))
        if "locality" in types or ("administrative_area_level_2" in types and not city):
            city = component.get("longText")
        if "administrative_area_level_1" in types:
            state = component.get("longText")
    return city, state


def _display_text(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get("text")
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def to_lead_row(place: Dict[str, Any], *, campaign_id: str, campaign_run_id: str) -> Optional[Dict[str, Any]]:
    """Map one Places v1 result to a ``leads`` row; None when it has no id."""
    place_id = place.get("id")
    if not place_id:
        logger.debug("Skipping place without id: %s", place)
        return None

    city, state = parse_city_state(place.get("addressComponents", []))
    return {
        "place_id": place_id,
        "campaign_id": campaign_id,
        "campaign_run_id": campaign_run_id,
        "name": _display_text(place.get("displayName")) or "Unknown",
        "address": place.get("formattedAddress"),
        "city": city,
        "state": state,
        "phone": place.get("nationalPhoneNumber"),
        "website": place.get("websiteUri"),
        "rating": place.get("rating"),
        "review_count": place.get("userRatingCount"),
        "business_type": _display_text(place.get("primaryTypeDisplayName")),
        "raw": place,
    }

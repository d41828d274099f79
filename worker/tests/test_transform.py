from leadpipe.etl import transform


def test_parse_city_state():
    components = [
        {"longText": "Austin", "types": ["locality", "political"]},
        {"longText": "Travis County", "types": ["administrative_area_level_2"]},
        {"longText": "Texas", "types": ["administrative_area_level_1"]},
    ]
    city, state = transform.parse_city_state(components)
    assert city == "Austin"
    assert state == "Texas"

    city, state = transform.parse_city_state([])
    assert city is None and state is None


def test_parse_city_state_falls_back_to_county():
    components = [{"longText": "Travis County", "types": ["administrative_area_level_2"]}]
    assert transform.parse_city_state(components) == ("Travis County", None)


def test_to_lead_row_maps_places_v1_fields():
    place = {
        "id": "ChIJ123",
        "displayName": {"text": "Acme Plumbing", "languageCode": "en"},
        "formattedAddress": "1 Main St, Austin, TX",
        "addressComponents": [{"longText": "Austin", "types": ["locality"]}],
        "nationalPhoneNumber": "(512) 555-0100",
        "websiteUri": "https://acme.example",
        "rating": 4.7,
        "userRatingCount": 88,
        "primaryTypeDisplayName": {"text": "Plumber"},
    }

    row = transform.to_lead_row(place, campaign_id="camp-1", campaign_run_id="run-1")

    assert row["place_id"] == "ChIJ123"
    assert row["name"] == "Acme Plumbing"
    assert row["city"] == "Austin"
    assert row["website"] == "https://acme.example"
    assert row["review_count"] == 88
    assert row["business_type"] == "Plumber"
    assert row["campaign_run_id"] == "run-1"
    assert row["raw"] is place


def test_to_lead_row_skips_places_without_id():
    assert transform.to_lead_row({"displayName": {"text": "Nameless"}}, campaign_id="c", campaign_run_id="r") is None


def test_to_lead_row_defaults_missing_name():
    row = transform.to_lead_row({"id": "p1"}, campaign_id="c", campaign_run_id="r")
    assert row["name"] == "Unknown"

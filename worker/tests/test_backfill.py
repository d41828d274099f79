import json
from datetime import datetime, timezone

import pytest

from leadpipe.jobs import backfill as backfill_job
from leadpipe.models import ScoreResult, ScrapeMessage, decode_message
from leadpipe.pipeline.backfill import LeadBackfill

SCRAPED_AT = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _messages(queue):
    return [decode_message(m.body) for m in queue.receive(50)]


@pytest.fixture
def backfill(leads, bridge):
    return LeadBackfill(leads, bridge)


def test_scrape_backfill_selects_unscraped_leads_with_websites(backfill, leads, campaigns, scrape_queue, score_queue):
    campaign = campaigns.add_campaign(enable_scraping=False)
    pending = leads.add_lead(campaign_id=campaign.id, place_id="p1", website="https://acme.example")
    leads.add_lead(campaign_id=campaign.id, place_id="p2", website=None)
    done = leads.add_lead(campaign_id=campaign.id, place_id="p3", website="https://done.example")
    leads.write_scraped_content(done.id, {"pages_crawled": 1}, SCRAPED_AT)

    result = backfill.run("scrape")

    assert (result.selected, result.published) == (1, 1)
    # Forced even though the campaign had scraping disabled.
    assert _messages(scrape_queue) == [ScrapeMessage(lead_id=pending.id, campaign_id=campaign.id, place_id="p1")]
    assert _messages(score_queue) == []


def test_score_backfill_skips_leads_still_waiting_on_a_scrape(backfill, leads, campaigns, score_queue):
    scraping = campaigns.add_campaign(enable_scraping=True)
    no_scraping = campaigns.add_campaign(enable_scraping=False)
    waiting = leads.add_lead(campaign_id=scraping.id, website="https://wait.example")
    scraped = leads.add_lead(campaign_id=scraping.id, website="https://ok.example")
    leads.write_scraped_content(scraped.id, {"pages_crawled": 2}, SCRAPED_AT)
    no_site = leads.add_lead(campaign_id=scraping.id, website=None)
    places_only = leads.add_lead(campaign_id=no_scraping.id, website="https://p.example")
    scored = leads.add_lead(campaign_id=no_scraping.id, website=None)
    leads.write_score(scored.id, ScoreResult(score=50, notes="Average."))

    result = backfill.run("score")

    queued = {m.lead_id for m in _messages(score_queue)}
    assert queued == {scraped.id, no_site.id, places_only.id}
    assert waiting.id not in queued
    assert result.published == 3


def test_backfill_filters_by_campaign_and_limit(backfill, leads, campaigns, scrape_queue):
    first = campaigns.add_campaign()
    second = campaigns.add_campaign()
    for i in range(3):
        leads.add_lead(campaign_id=first.id, website=f"https://a{i}.example")
    leads.add_lead(campaign_id=second.id, website="https://b.example")

    result = backfill.run("scrape", campaign_id=first.id, limit=2)

    messages = _messages(scrape_queue)
    assert result.selected == 2
    assert len(messages) == 2
    assert {m.campaign_id for m in messages} == {first.id}


def test_dry_run_publishes_nothing(backfill, leads, campaigns, scrape_queue):
    campaign = campaigns.add_campaign()
    leads.add_lead(campaign_id=campaign.id, website="https://acme.example")

    result = backfill.run("scrape", dry_run=True)

    assert (result.selected, result.published) == (1, 0)
    assert result.to_dict()["dryRun"] is True
    assert scrape_queue.depth()["visible"] == 0


@pytest.mark.parametrize("stage,limit", [("ingest", 10), ("scrape", 0)])
def test_backfill_rejects_bad_arguments(backfill, stage, limit):
    with pytest.raises(ValueError):
        backfill.run(stage, limit=limit)


def test_cli_prints_result(monkeypatch, capsys, settings, backfill, leads, campaigns):
    campaign = campaigns.add_campaign()
    leads.add_lead(campaign_id=campaign.id, website="https://acme.example")
    monkeypatch.setattr(backfill_job, "get_settings", lambda: settings)
    monkeypatch.setattr(backfill_job.db, "init_pool", lambda: None)
    monkeypatch.setattr(backfill_job, "build_backfill", lambda _settings: backfill)

    backfill_job.main(["scrape", "--campaign", campaign.id, "--limit", "5"])

    printed = json.loads(capsys.readouterr().out)
    assert printed == {"stage": "scrape", "campaignId": campaign.id, "selected": 1, "published": 1, "dryRun": False}


def test_cli_rejects_non_positive_limit():
    with pytest.raises(SystemExit) as excinfo:
        backfill_job.main(["score", "--limit", "0"])
    assert excinfo.value.code == 2

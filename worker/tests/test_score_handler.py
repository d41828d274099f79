from datetime import datetime, timezone

import pytest

from leadpipe.core.errors import MalformedMessage, ScoringFailed, TransientError
from leadpipe.models import ScoreMessage, ScoreResult, ScrapeMessage, encode_message
from leadpipe.pipeline.dispatcher import Dispatcher
from leadpipe.pipeline.score import ScoreHandler
from leadpipe.pipeline.scrape import ScrapeHandler


class FakeModel:
    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = []

    def score(self, lead, scraped_content):
        self.calls.append((lead.id, scraped_content))
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return ScoreResult(score=64, notes="Established shop with a small team.")


def test_scores_and_writes_both_fields(leads):
    lead = leads.add_lead(campaign_id="c1")
    model = FakeModel()

    ScoreHandler(leads, model)(ScoreMessage(lead_id=lead.id, campaign_id="c1"))

    stored = leads.get_lead(lead.id)
    assert stored.qualification_score == 64
    assert stored.qualification_notes == "Established shop with a small team."
    assert stored.scored_at is not None


def test_already_scored_lead_is_skipped(leads):
    lead = leads.add_lead(campaign_id="c1")
    leads.write_score(lead.id, ScoreResult(score=10, notes="Weak fit."))
    model = FakeModel()

    ScoreHandler(leads, model)(ScoreMessage(lead_id=lead.id, campaign_id="c1"))

    assert model.calls == []
    assert leads.get_lead(lead.id).qualification_score == 10


def test_wrong_message_kind_is_malformed(leads):
    with pytest.raises(MalformedMessage):
        ScoreHandler(leads, FakeModel())(ScrapeMessage(lead_id="l1", campaign_id="c1"))


def test_fails_twice_then_succeeds(leads, score_queue, clock):
    lead = leads.add_lead(campaign_id="c1")
    model = FakeModel(
        outcomes=[
            TransientError("model timed out"),
            ScoringFailed("model reply is not JSON"),
            ScoreResult(score=81, notes="Strong reviews and long tenure."),
        ]
    )
    score_queue.send(encode_message(ScoreMessage(lead_id=lead.id, campaign_id="c1")))
    dispatcher = Dispatcher(score_queue, ScoreHandler(leads, model), max_concurrency=2)

    for _ in range(3):
        dispatcher.run_until_empty()
        # Past the redelivery backoff.
        clock.advance(3600)
    dispatcher.close()

    assert len(model.calls) == 3
    assert leads.get_lead(lead.id).qualification_score == 81
    assert dispatcher.stats == {"completed": 1, "requeued": 2, "dead_lettered": 0, "malformed": 0, "settle_failed": 0}
    assert score_queue.depth() == {"visible": 0, "in_flight": 0, "dead_lettered": 0}


def test_rate_limited_model_does_not_burn_deliveries_at_once(leads, score_queue, clock):
    lead = leads.add_lead(campaign_id="c1")
    model = FakeModel(outcomes=[TransientError("429 rate limited")] * 3)
    score_queue.send(encode_message(ScoreMessage(lead_id=lead.id, campaign_id="c1")))
    dispatcher = Dispatcher(score_queue, ScoreHandler(leads, model), max_concurrency=2)

    dispatcher.run_until_empty()
    dispatcher.close()

    assert len(model.calls) == 1
    assert score_queue.dead_letters() == []
    assert dispatcher.stats["requeued"] == 1


def test_scoring_sees_content_written_before_the_message(leads, bridge, campaigns, settings, scrape_queue, score_queue):
    campaign = campaigns.add_campaign()
    lead = leads.add_lead(campaign_id=campaign.id, website="https://acme.example")
    content = {"pages_crawled": 2, "blocked_by_robots": False, "markdown": "# Team\n\n12 technicians."}

    class _Enricher:
        def __init__(self, website, settings=None):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def enrich(self):
            return content

    scrape = ScrapeHandler(
        leads, bridge, settings=settings, enricher_factory=_Enricher, clock=lambda: datetime.now(timezone.utc)
    )
    scrape_queue.send(encode_message(ScrapeMessage(lead_id=lead.id, campaign_id=campaign.id)))
    scrape_dispatcher = Dispatcher(scrape_queue, scrape, max_concurrency=1)
    scrape_dispatcher.run_until_empty()
    scrape_dispatcher.close()

    model = FakeModel()
    score_dispatcher = Dispatcher(score_queue, ScoreHandler(leads, model), max_concurrency=1)
    score_dispatcher.run_until_empty()
    score_dispatcher.close()

    assert model.calls == [(lead.id, content)]
    assert leads.get_lead(lead.id).qualification_score == 64

import threading

import pytest

from leadpipe.core.errors import CampaignNotFound, NotReady, RunAlreadyActive, RunNotFound
from leadpipe.models import ProgressDelta, RunStatus
from leadpipe.pipeline.orchestrator import CampaignRunOrchestrator


class DummyExecutor:
    def __init__(self, fail=False):
        self.submitted = []
        self.fail = fail

    def submit(self, fn, *args):
        if self.fail:
            raise RuntimeError("executor shut down")
        self.submitted.append((fn, args))


def test_start_run_unknown_campaign(orchestrator):
    with pytest.raises(CampaignNotFound):
        orchestrator.start_run("missing")


def test_start_run_requires_confirmed_queries(orchestrator, campaigns):
    unconfirmed = campaigns.add_campaign(queries_confirmed_at=None)
    empty = campaigns.add_campaign(queries_count=0)

    with pytest.raises(NotReady):
        orchestrator.start_run(unconfirmed.id)
    with pytest.raises(NotReady):
        orchestrator.start_run(empty.id)
    assert campaigns.runs == {}


def test_start_run_creates_run_and_submits_ingestion(campaigns):
    executor = DummyExecutor()
    ingested = []
    orchestrator = CampaignRunOrchestrator(campaigns, executor=executor, ingest=lambda c, r: ingested.append((c, r)))
    campaign = campaigns.add_campaign(queries_count=4)

    run = orchestrator.start_run(campaign.id)

    assert run.status is RunStatus.RUNNING
    assert run.queries_total == 4
    # Fire-and-forget: nothing ran synchronously.
    assert ingested == []
    fn, args = executor.submitted[0]
    fn(*args)
    assert ingested == [(campaign.id, run.id)]


def test_second_start_is_rejected_while_running(orchestrator, campaigns):
    campaign = campaigns.add_campaign()
    orchestrator.start_run(campaign.id)

    with pytest.raises(RunAlreadyActive):
        orchestrator.start_run(campaign.id)


def test_launch_failure_fails_the_run(campaigns):
    orchestrator = CampaignRunOrchestrator(campaigns, executor=DummyExecutor(fail=True), ingest=lambda c, r: None)
    campaign = campaigns.add_campaign()

    with pytest.raises(RuntimeError):
        orchestrator.start_run(campaign.id)

    (run,) = campaigns.runs.values()
    assert run.status is RunStatus.FAILED
    assert "ingestion launch failed" in run.error_messages[0]


def test_crashed_ingestion_fails_the_run(campaigns):
    def _crash(campaign_id, run_id):
        raise FileNotFoundError("queries.json")

    executor = DummyExecutor()
    orchestrator = CampaignRunOrchestrator(campaigns, executor=executor, ingest=_crash)
    run = orchestrator.start_run(campaigns.add_campaign().id)

    fn, args = executor.submitted[0]
    fn(*args)

    assert orchestrator.get_run_status(run.id).status is RunStatus.FAILED


def test_get_run_status_unknown(orchestrator):
    with pytest.raises(RunNotFound):
        orchestrator.get_run_status("missing")


def test_record_progress_completes_when_all_queries_ran(orchestrator, campaigns):
    run = orchestrator.start_run(campaigns.add_campaign(queries_count=2).id)

    after_first = orchestrator.record_progress(run.id, ProgressDelta(queries_executed=1, leads_found=3))
    assert after_first.status is RunStatus.RUNNING

    after_second = orchestrator.record_progress(run.id, ProgressDelta(queries_executed=1, duplicates_skipped=2))
    assert after_second.status is RunStatus.COMPLETED
    assert after_second.leads_found == 3
    assert after_second.duplicates_skipped == 2
    assert after_second.completed_at is not None


def test_record_progress_never_exceeds_total_or_decreases(orchestrator, campaigns):
    run = orchestrator.start_run(campaigns.add_campaign(queries_count=3).id)

    with pytest.raises(ValueError):
        orchestrator.record_progress(run.id, ProgressDelta(queries_executed=-1))

    seen = []
    for _ in range(5):
        seen.append(orchestrator.record_progress(run.id, ProgressDelta(queries_executed=1)).queries_executed)

    assert seen == sorted(seen)
    assert max(seen) == 3


def test_concurrent_progress_loses_no_increments(orchestrator, campaigns):
    run = orchestrator.start_run(campaigns.add_campaign(queries_count=50).id)

    def _report():
        for _ in range(10):
            orchestrator.record_progress(run.id, ProgressDelta(queries_executed=1, leads_found=2))

    threads = [threading.Thread(target=_report) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    final = orchestrator.get_run_status(run.id)
    assert final.queries_executed == 50
    assert final.leads_found == 100
    assert final.status is RunStatus.COMPLETED


def test_record_progress_unknown_run(orchestrator):
    with pytest.raises(RunNotFound):
        orchestrator.record_progress("missing", ProgressDelta(queries_executed=1))


def test_finish_and_fail_are_single_transition(orchestrator, campaigns):
    run = orchestrator.start_run(campaigns.add_campaign(queries_count=5).id)

    finished = orchestrator.finish_run(run.id, degraded=True, message="budget exhausted")
    assert finished.status is RunStatus.COMPLETED
    assert finished.degraded is True

    assert orchestrator.fail_run(run.id, "late failure") is None
    assert orchestrator.get_run_status(run.id).status is RunStatus.COMPLETED


def test_error_messages_are_bounded(campaigns):
    campaigns.error_messages_limit = 3
    orchestrator = CampaignRunOrchestrator(campaigns)
    run = orchestrator.start_run(campaigns.add_campaign(queries_count=10).id)

    for i in range(5):
        orchestrator.record_progress(run.id, ProgressDelta(error_count=1, error_messages=[f"error {i}"]))

    status = orchestrator.get_run_status(run.id)
    assert status.error_count == 5
    assert status.error_messages == ["error 0", "error 1", "error 2"]

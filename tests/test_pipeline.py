"""End-to-end runs of one invocation against the in-memory store."""
from decimal import Decimal

import pytest

from estimator.errors import ConfigurationError, FetchError, ModelOutputError
from estimator.store import JobStore

from conftest import STAGE_A_SMOKE, STAGE_B_SMOKE, FakeIngestor, FakeModelClient, RecordingMailer


def _row(session_factory, job_id):
    return JobStore(session_factory).get(job_id)


def test_smoke_detector_job_completes_and_emails(session_factory, seed_config, add_job, make_worker):
    seed_config()
    job_id = add_job()
    mailer = RecordingMailer()

    result = make_worker(mailer=mailer).process_next_job()

    assert result.ok and result.job_id == job_id
    assert result.status == "complete"
    assert result.emailed is True

    row = _row(session_factory, job_id)
    assert row.status == "complete"
    assert row.error is None
    assert row.completed_at is not None and row.ai_completed_at is not None
    assert row.email_sent_at is not None
    est = row.estimate_json
    assert [li["code"] for li in est["line_items"]] == ["SMOKE01"]
    assert Decimal(str(est["subtotal"])) == Decimal("45.00")
    assert Decimal(str(est["tax"])) == Decimal("4.50")
    assert Decimal(str(est["total"])) == Decimal("49.50")
    assert '"total": 49.5' in row.estimate_text
    assert row.validation_errors == []
    assert row.ai_audit["raw_extraction"] == STAGE_A_SMOKE
    assert row.ai_audit["shortlist_codes"] == ["SMOKE01"]

    sent = mailer.sent[0]
    assert sent.to == ["pat@example.com", "BINSR@dignhomes.com"]
    assert sent.subject == f"BINSR Pros Estimate - Job {job_id}"
    assert "$49.50" in sent.html


def test_invalid_model_json_fails_without_estimate(session_factory, seed_config, add_job, make_worker):
    seed_config()
    job_id = add_job()
    model = FakeModelClient({"extraction": STAGE_A_SMOKE, "mapping": '{"summary": "oops", "line_items": ['})
    mailer = RecordingMailer()

    result = make_worker(model=model, mailer=mailer).process_next_job()

    assert not result.ok
    assert result.status == "failed"
    row = _row(session_factory, job_id)
    assert row.status == "failed"
    assert row.error.startswith("mapping: Failed to parse model JSON output")
    assert row.estimate_json is None
    assert row.completed_at is None
    assert row.ai_started_at is not None
    assert mailer.sent == []


def test_model_timeout_fails_the_job(session_factory, seed_config, add_job, make_worker):
    seed_config()
    job_id = add_job()
    model = FakeModelClient({"extraction": ModelOutputError("Claude call timed out after 120.0s", stage="extraction")})

    make_worker(model=model).process_next_job()

    row = _row(session_factory, job_id)
    assert row.status == "failed"
    assert "timed out" in row.error


def test_fetch_error_fails_before_model_calls(session_factory, seed_config, add_job, make_worker):
    seed_config()
    job_id = add_job()
    model = FakeModelClient({"extraction": STAGE_A_SMOKE, "mapping": STAGE_B_SMOKE})
    ingestor = FakeIngestor(error=FetchError("Failed to fetch PDF (403) from https://x", status=403))

    result = make_worker(model=model, ingestor=ingestor).process_next_job()

    assert result.error == "Failed to fetch PDF (403) from https://x"
    row = _row(session_factory, job_id)
    assert row.status == "failed"
    assert row.ai_started_at is None
    assert model.calls == []


def test_email_failure_keeps_job_complete(session_factory, seed_config, add_job, make_worker):
    seed_config()
    job_id = add_job()

    result = make_worker(mailer=RecordingMailer(fail_with="SMTP down")).process_next_job()

    assert result.ok and result.status == "complete"
    assert result.emailed is False
    row = _row(session_factory, job_id)
    assert row.status == "complete"
    assert row.email_error == "SMTP down"
    assert row.email_sent_at is None
    assert row.estimate_json is not None


def test_stored_template_on_missing_field_still_sends(session_factory, seed_config, add_job, make_worker):
    seed_config(templates=[("estimate_email", "Estimate {{ job.id }}", "<p>{{ job.deposit | money }}{{ job.nope | qty }}</p>")])
    job_id = add_job()
    mailer = RecordingMailer()

    result = make_worker(mailer=mailer).process_next_job()

    assert result.ok and result.emailed is True
    assert mailer.sent[0].html == "<p></p>"
    row = _row(session_factory, job_id)
    assert row.status == "complete"
    assert row.email_error is None
    assert row.email_sent_at is not None


class _BrokenMailer:
    def send(self, message):
        raise RuntimeError("connection reset")


def test_unexpected_email_error_is_recorded(session_factory, seed_config, add_job, make_worker, caplog):
    seed_config()
    job_id = add_job()

    result = make_worker(mailer=_BrokenMailer()).process_next_job()

    assert result.ok and result.status == "complete"
    assert result.email_error == "connection reset"
    row = _row(session_factory, job_id)
    assert row.status == "complete"
    assert row.email_error == "connection reset"
    assert row.email_sent_at is None
    assert "unexpected email error" in caplog.text


def test_email_bookkeeping_failure_does_not_escape(session_factory, seed_config, add_job, make_worker, monkeypatch):
    seed_config()
    job_id = add_job()
    worker = make_worker()

    def db_gone(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(worker.lifecycle, "mark_email_sent", db_gone)

    result = worker.process_next_job()

    assert result.ok and result.emailed is True
    assert _row(session_factory, job_id).status == "complete"


def test_configuration_error_propagates_without_touching_jobs(session_factory, seed_config, add_job, make_worker):
    seed_config(active_versions=0)
    job_id = add_job()

    with pytest.raises(ConfigurationError):
        make_worker().process_next_job()

    row = _row(session_factory, job_id)
    assert row.status == "queued"
    assert row.started_at is None


def test_nothing_to_do(session_factory, seed_config, make_worker):
    seed_config()

    result = make_worker().process_next_job()

    assert result.ok and result.job_id is None
    assert result.message == "No queued or stale jobs"


def test_diagnostics_are_persisted_with_the_estimate(session_factory, seed_config, add_job, make_worker):
    seed_config(trip_fee="85.00")
    job_id = add_job()
    mapping = (
        '{"summary": "s", "line_items": ['
        '{"code": "SMOKE01", "description": "d", "qty": 1, "unit_price": 1.0},'
        '{"code": "BOGUS", "description": "mystery work", "qty": 1}],'
        '"assumptions": [], "unmapped": []}'
    )
    model = FakeModelClient({"extraction": STAGE_A_SMOKE, "mapping": mapping})

    make_worker(model=model).process_next_job()

    row = _row(session_factory, job_id)
    assert row.status == "complete"
    kinds = [d["kind"] for d in row.validation_errors]
    assert kinds == ["price_override", "unmapped_code", "trip_fee_missing"]
    assert row.unmapped_items == [{"item": "mystery work", "reason": "code not in catalog", "code": "BOGUS"}]
    assert Decimal(str(row.estimate_json["total"])) == Decimal("49.50")


def test_empty_extraction_completes_with_zero_estimate(session_factory, seed_config, add_job, make_worker):
    seed_config()
    job_id = add_job()
    model = FakeModelClient({"extraction": '{"items": []}'})

    make_worker(model=model).process_next_job()

    row = _row(session_factory, job_id)
    assert row.status == "complete"
    assert row.estimate_json["line_items"] == []
    assert [c["stage"] for c in model.calls] == ["extraction"]

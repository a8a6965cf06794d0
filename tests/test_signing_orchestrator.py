import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from conftest import ScriptedSigningProvider, build_harness, make_form_data, transient

from app.core.exceptions import ConflictError, NotFoundError, PermanentProviderError, ValidationError
from app.services import smart_fields
from app.services.smart_fields import field_map_digest


async def _process_due(harness):
    due = await harness.jobs.list_due(harness.clock(), limit=10)
    assert due, "expected a due signing job"
    return await harness.orchestrator.process(due[0])


@pytest.mark.asyncio
async def test_start_queues_job_for_application_in_review(harness):
    application = await harness.ready_for_signing()
    actor_id = uuid4()

    job = await harness.orchestrator.start(application.id, actor_id=actor_id)

    assert job.status == "queued"
    assert job.attempts == 0
    assert job.requested_by == actor_id
    assert job.template_ref == "tmpl-1"
    assert job.field_map_digest
    assert harness.application(application.id).signing_job_id == job.id
    assert "signing_job.created" in harness.audit.actions()


@pytest.mark.asyncio
async def test_start_wakes_the_worker(harness):
    application = await harness.ready_for_signing()
    woken = []
    harness.orchestrator.wakeup = lambda: woken.append(True)

    await harness.orchestrator.start(application.id)

    assert woken == [True]


@pytest.mark.asyncio
async def test_start_rejects_application_not_in_review(harness):
    application = harness.add_application({"bank_statements": "pending"})

    with pytest.raises(ValidationError) as excinfo:
        await harness.orchestrator.start(application.id)

    assert excinfo.value.details["suggested_stage"] == "Requires Docs"
    assert harness.jobs.jobs == {}


@pytest.mark.asyncio
async def test_start_rejects_incomplete_field_map(harness):
    application = await harness.ready_for_signing(form_data=make_form_data(email=""))

    with pytest.raises(ValidationError) as excinfo:
        await harness.orchestrator.start(application.id)

    assert "contact_email" in excinfo.value.details["missing_fields"]


@pytest.mark.asyncio
async def test_start_for_unknown_application_is_not_found(harness):
    with pytest.raises(NotFoundError):
        await harness.orchestrator.start(uuid4())


@pytest.mark.asyncio
async def test_second_start_returns_conflict_with_existing_job(harness):
    application = await harness.ready_for_signing()
    job = await harness.orchestrator.start(application.id)

    with pytest.raises(ConflictError) as excinfo:
        await harness.orchestrator.start(application.id)

    assert excinfo.value.job.id == job.id
    assert excinfo.value.details["job_id"] == str(job.id)


@pytest.mark.asyncio
async def test_concurrent_starts_create_one_job(harness):
    application = await harness.ready_for_signing()

    results = await asyncio.gather(
        *(harness.orchestrator.start(application.id) for _ in range(4)),
        return_exceptions=True,
    )

    created = [result for result in results if not isinstance(result, Exception)]
    conflicts = [result for result in results if isinstance(result, ConflictError)]
    assert len(created) == 1
    assert len(conflicts) == 3
    assert len(harness.jobs.jobs) == 1


@pytest.mark.asyncio
async def test_signed_application_requirement_does_not_block_signing(harness):
    application = harness.add_application({"bank_statements": "accepted"})
    harness.catalog.requirements[application.id] = {"bank_statements", "signed_application"}
    await harness.engine.apply(application.id)
    assert harness.application(application.id).stage == "Requires Docs"

    job = await harness.orchestrator.start(application.id)

    assert job.status == "queued"


@pytest.mark.asyncio
async def test_process_submits_and_awaits_callback(harness):
    application = await harness.ready_for_signing()
    job = await harness.orchestrator.start(application.id)

    processed = await harness.orchestrator.process(job)

    assert processed.status == "awaiting_callback"
    assert processed.attempts == 1
    assert processed.provider_document_id.startswith("doc-1-")
    [(template_ref, fields)] = harness.provider.calls
    assert template_ref == "tmpl-1"
    assert fields["contact_first_name"] == "Todd"
    assert processed.field_map_digest == field_map_digest(fields)
    assert harness.application(application.id).signing_document_id == processed.provider_document_id


@pytest.mark.asyncio
async def test_process_skips_job_claimed_elsewhere(harness):
    application = await harness.ready_for_signing()
    job = await harness.orchestrator.start(application.id)
    await harness.orchestrator.process(job)

    assert await harness.orchestrator.process(job) is None
    assert len(harness.provider.calls) == 1


@pytest.mark.asyncio
async def test_transient_failures_retry_with_backoff_until_success():
    harness = build_harness(provider=ScriptedSigningProvider([transient(), transient()]))
    application = await harness.ready_for_signing()
    job = await harness.orchestrator.start(application.id)

    first = await _process_due(harness)
    assert first.status == "queued"
    assert first.not_before - harness.clock() == timedelta(seconds=5)
    assert await harness.jobs.list_due(harness.clock(), limit=10) == []

    harness.clock.advance(seconds=5)
    second = await _process_due(harness)
    assert second.status == "queued"
    assert second.not_before - harness.clock() == timedelta(seconds=10)

    harness.clock.advance(seconds=10)
    final = await _process_due(harness)

    assert final.status == "awaiting_callback"
    assert final.attempts == 3
    assert final.last_error is None
    assert (await harness.orchestrator.status(job.id)).attempts == 3


@pytest.mark.asyncio
async def test_transient_failures_exhaust_attempts_and_fail():
    harness = build_harness(
        provider=ScriptedSigningProvider([transient(), transient()]),
        max_attempts=2,
    )
    application = await harness.ready_for_signing()
    job = await harness.orchestrator.start(application.id)

    await _process_due(harness)
    harness.clock.advance(minutes=5)
    failed = await _process_due(harness)

    assert failed.status == "failed"
    assert failed.attempts == 2
    assert "gave up after 2 attempts" in failed.last_error
    [event] = harness.publisher.named("signing_job_failed")
    assert event.job_id == job.id
    assert "signing_failed" in harness.notifier.templates("staff")


@pytest.mark.asyncio
async def test_permanent_provider_error_fails_without_retry():
    harness = build_harness(provider=ScriptedSigningProvider([PermanentProviderError("Template not found")]))
    application = await harness.ready_for_signing()
    await harness.orchestrator.start(application.id)

    failed = await _process_due(harness)

    assert failed.status == "failed"
    assert failed.attempts == 1
    assert failed.last_error == "Template not found"


@pytest.mark.asyncio
async def test_provider_timeout_is_retried():
    harness = build_harness(provider=ScriptedSigningProvider(delay=0.2), submit_timeout_seconds=0.01)
    application = await harness.ready_for_signing()
    await harness.orchestrator.start(application.id)

    requeued = await _process_due(harness)

    assert requeued.status == "queued"
    assert requeued.last_error == "Provider submit timed out"


@pytest.mark.asyncio
async def test_failed_job_allows_a_new_start():
    harness = build_harness(provider=ScriptedSigningProvider([PermanentProviderError("bad template")]))
    application = await harness.ready_for_signing()
    first = await harness.orchestrator.start(application.id)
    await _process_due(harness)

    second = await harness.orchestrator.start(application.id)

    assert second.id != first.id
    assert second.status == "queued"


@pytest.mark.asyncio
async def test_cancel_queued_job_is_idempotent(harness):
    application = await harness.ready_for_signing()
    job = await harness.orchestrator.start(application.id)

    cancelled = await harness.orchestrator.cancel(job.id)
    again = await harness.orchestrator.cancel(job.id)

    assert cancelled.status == "cancelled"
    assert cancelled.cancelled_at == harness.clock()
    assert again.status == "cancelled"
    assert harness.audit.actions().count("signing_job.cancelled") == 1
    assert await harness.jobs.list_due(harness.clock(), limit=10) == []


@pytest.mark.asyncio
async def test_cancel_awaiting_callback_is_conflict(harness):
    job = await harness.submitted_job()

    with pytest.raises(ConflictError):
        await harness.orchestrator.cancel(job.id)


@pytest.mark.asyncio
async def test_status_of_unknown_job_is_not_found(harness):
    with pytest.raises(NotFoundError):
        await harness.orchestrator.status(uuid4())


@pytest.mark.asyncio
async def test_recover_stalled_requeues_expired_submission(harness):
    application = await harness.ready_for_signing()
    job = await harness.orchestrator.start(application.id)
    await harness.jobs.claim(job.id, now=harness.clock())

    assert await harness.orchestrator.recover_stalled() == 0
    harness.clock.advance(seconds=301)
    recovered = await harness.orchestrator.recover_stalled()

    assert recovered == 1
    assert harness.job(job.id).status == "queued"
    assert harness.job(job.id).last_error == "Submission lease expired"


@pytest.mark.asyncio
async def test_recover_stalled_fails_job_without_attempts_left():
    harness = build_harness(max_attempts=1)
    application = await harness.ready_for_signing()
    job = await harness.orchestrator.start(application.id)
    await harness.jobs.claim(job.id, now=harness.clock())
    harness.clock.advance(minutes=10)

    await harness.orchestrator.recover_stalled()

    assert harness.job(job.id).status == "failed"


@pytest.mark.asyncio
async def test_complete_records_signed_document_and_reapplies(harness):
    job = await harness.submitted_job()

    completed = await harness.orchestrator.complete(job.id, "s3://signed/app.pdf")

    assert completed.status == "completed"
    assert completed.signed_document_ref == "s3://signed/app.pdf"
    application = harness.application(job.application_id)
    assert application.signed_at == harness.clock()
    assert application.signed_document_ref == "s3://signed/app.pdf"
    assert ("signed_application", "accepted") in [
        (entry.document_type, entry.status) for entry in harness.ledger.entries[job.application_id]
    ]
    [event] = harness.publisher.named("signing_job_completed")
    assert event.job_id == job.id
    # Signing alone does not move an application that is already in review.
    assert application.stage == "In Review"


@pytest.mark.asyncio
async def test_complete_replay_has_no_further_effect(harness):
    job = await harness.submitted_job()
    await harness.orchestrator.complete(job.id, "s3://signed/app.pdf")

    again = await harness.orchestrator.complete(job.id, "s3://signed/app.pdf")

    assert again.status == "completed"
    assert len(harness.publisher.named("signing_job_completed")) == 1
    assert len(harness.store.signed_documents) == 1


@pytest.mark.asyncio
async def test_complete_before_submission_is_conflict(harness):
    application = await harness.ready_for_signing()
    job = await harness.orchestrator.start(application.id)

    with pytest.raises(ConflictError):
        await harness.orchestrator.complete(job.id, "s3://signed/app.pdf")


@pytest.mark.asyncio
async def test_complete_when_signing_gates_documents(harness):
    application = harness.add_application({"bank_statements": "accepted"})
    harness.catalog.requirements[application.id] = {"bank_statements", "signed_application"}
    await harness.engine.apply(application.id)
    job = await harness.orchestrator.start(application.id)
    job = await harness.orchestrator.process(job)

    await harness.orchestrator.complete(job.id, "s3://signed/app.pdf")

    assert harness.application(application.id).stage == "In Review"
    [event] = [e for e in harness.publisher.named("stage_changed") if e.trigger == "signing_completed"]
    assert (event.from_stage, event.to_stage) == ("Requires Docs", "In Review")


@pytest.mark.asyncio
async def test_fail_marks_awaiting_job_failed(harness):
    job = await harness.submitted_job()

    failed = await harness.orchestrator.fail(job.id, "Signer declined")

    assert failed.status == "failed"
    assert failed.last_error == "Signer declined"
    again = await harness.orchestrator.fail(job.id, "Signer declined")
    assert again.status == "failed"
    assert len(harness.publisher.named("signing_job_failed")) == 1


@pytest.mark.asyncio
async def test_terminal_job_ignores_later_completion(harness):
    job = await harness.submitted_job()
    await harness.orchestrator.fail(job.id, "expired")

    result = await harness.orchestrator.complete(job.id, "s3://late.pdf")

    assert result.status == "failed"
    assert harness.publisher.named("signing_job_completed") == []


@pytest.mark.asyncio
async def test_field_map_failure_fails_job_instead_of_stalling(harness, monkeypatch):
    application = await harness.ready_for_signing()
    job = await harness.orchestrator.start(application.id)

    def broken(snapshot):
        raise ArithmeticError("bad value")

    monkeypatch.setattr(smart_fields, "generate", broken)
    failed = await harness.orchestrator.process(job)

    assert failed.status == "failed"
    assert failed.last_error == "Field map generation failed: ArithmeticError"
    assert harness.provider.calls == []

"""
Tests for the issuance state machine, drain loop and operator actions.
"""
import asyncio
from datetime import timedelta

import pytest

from app.core.exceptions import (
    BatchAlreadyCompletedError,
    BatchAlreadyProcessingError,
    BatchNotFoundError,
    BatchNotValidError,
    CertificateNotFoundError,
    CertificateStateError,
    NoMatchingCertificatesError,
)
from app.services.issuance_service import ProcessingRegistry
from app.storage.blob_store import issued_pdf_key, source_pdf_key
from app.utils.helpers import utcnow
from conftest import TWO_ROWS, certificate_events, make_batch_zip


async def run_batch(issuance, batch_id):
    task = await issuance.start_batch_processing(batch_id)
    await task


async def certs_by_business_id(store, batch_id):
    return {c.certificate_id: c for c in await store.find_certificates(batch_id=batch_id)}


class ActDuringPause:
    """Pacing that runs `action` during the first pause between certificates."""

    def __init__(self, action):
        self.action = action
        self.pauses = 0

    async def wait(self):
        self.pauses += 1
        if self.pauses == 1:
            await self.action()
        await asyncio.sleep(0.01)


class TestDrainLoop:
    @pytest.mark.asyncio
    async def test_issues_every_certificate_in_order(self, issuance, store, blobs, broadcaster, valid_batch):
        await run_batch(issuance, valid_batch.id)

        batch = await store.get_batch(valid_batch.id)
        assert batch.status == "completed"
        assert batch.processed_certificates == 2

        certificates = await store.find_certificates(batch_id=valid_batch.id)
        for cert in certificates:
            assert cert.status == "issued"
            assert cert.verification_url == f"https://verify.test?id={cert.certificate_id}"
            assert cert.qr_code_data.startswith("data:image/png;base64,")
            assert cert.issued_pdf_path == issued_pdf_key(cert.project_id, cert.batch_id, cert.filename)
            assert await blobs.exists(cert.issued_pdf_path)
            assert cert.processing_started_at <= cert.processing_completed_at

        types = broadcaster.types()
        assert types.count("batchStarted") == 1
        assert types.count("certificateStarted") == 2
        assert types.count("certificateCompleted") == 2
        assert types.count("batchCompleted") == 1
        assert types == [
            "batchStarted",
            "certificateStarted", "certificateCompleted",
            "certificateStarted", "certificateCompleted",
            "batchCompleted",
        ]
        first, second = certificates
        started = certificate_events(broadcaster.events, "certificateStarted")
        assert [e.certificate_id for e in started] == [first.id, second.id]
        assert broadcaster.events[0].total_certificates == 2

    @pytest.mark.asyncio
    async def test_lock_is_held_during_run_and_released_after(self, issuance, valid_batch):
        task = await issuance.start_batch_processing(valid_batch.id)
        assert issuance.is_processing(valid_batch.id) is True

        await task
        assert issuance.is_processing(valid_batch.id) is False

    @pytest.mark.asyncio
    async def test_second_concurrent_start_is_rejected(self, issuance, broadcaster, valid_batch):
        task = await issuance.start_batch_processing(valid_batch.id)
        with pytest.raises(BatchAlreadyProcessingError):
            await issuance.start_batch_processing(valid_batch.id)
        await task

        assert broadcaster.types().count("batchStarted") == 1
        assert broadcaster.types().count("batchCompleted") == 1

    @pytest.mark.asyncio
    async def test_completed_batch_cannot_restart(self, issuance, valid_batch):
        await run_batch(issuance, valid_batch.id)

        with pytest.raises(BatchAlreadyCompletedError):
            await issuance.start_batch_processing(valid_batch.id)
        assert issuance.is_processing(valid_batch.id) is False

    @pytest.mark.asyncio
    async def test_invalid_batch_is_rejected_without_changes(self, issuance, batch_service, store, broadcaster, ready_project):
        batch = await batch_service.ingest_zip(ready_project.id, make_batch_zip(TWO_ROWS, ["a.pdf"]))
        before = await store.get_batch(batch.id)

        with pytest.raises(BatchNotValidError):
            await issuance.start_batch_processing(batch.id)

        assert await store.get_batch(batch.id) == before
        assert broadcaster.events == []
        assert issuance.is_processing(batch.id) is False

    @pytest.mark.asyncio
    async def test_unknown_batch(self, issuance):
        with pytest.raises(BatchNotFoundError):
            await issuance.start_batch_processing("missing")
        assert issuance.is_processing("missing") is False

    @pytest.mark.asyncio
    async def test_stamping_failure_does_not_abort_batch(self, issuance, store, blobs, broadcaster, valid_batch):
        first = (await certs_by_business_id(store, valid_batch.id))["C1"]
        await blobs.write_bytes(source_pdf_key(first.project_id, first.batch_id, first.filename), b"garbage")

        await run_batch(issuance, valid_batch.id)

        certs = await certs_by_business_id(store, valid_batch.id)
        assert certs["C1"].status == "failed"
        assert "could not be read" in certs["C1"].error_message
        assert certs["C1"].processing_completed_at is not None
        assert certs["C2"].status == "issued"
        assert (await store.get_batch(valid_batch.id)).status == "completed"

        failed = [e for e in certificate_events(broadcaster.events, "certificateCompleted") if e.status == "failed"]
        assert len(failed) == 1 and failed[0].error == certs["C1"].error_message

    @pytest.mark.asyncio
    async def test_missing_source_pdf_fails_certificate(self, issuance, store, blobs, valid_batch):
        first = (await certs_by_business_id(store, valid_batch.id))["C1"]
        await blobs.delete_prefix(source_pdf_key(first.project_id, first.batch_id, first.filename))

        await run_batch(issuance, valid_batch.id)

        cert = await store.get_certificate(first.id)
        assert cert.status == "failed"
        assert "not found in the uploaded ZIP" in cert.error_message

    @pytest.mark.asyncio
    async def test_store_failure_fails_the_batch_and_releases_lock(self, issuance, store, broadcaster, valid_batch):
        original = store.find_certificates

        async def broken(*args, **kwargs):
            raise RuntimeError("database unavailable")

        store.find_certificates = broken
        await run_batch(issuance, valid_batch.id)
        store.find_certificates = original

        batch = await store.get_batch(valid_batch.id)
        assert batch.status == "failed"
        assert batch.error_message == "database unavailable"
        assert broadcaster.types() == ["batchFailed"]
        assert issuance.is_processing(valid_batch.id) is False

        # A failed batch with a valid manifest can be started again
        await run_batch(issuance, valid_batch.id)
        assert (await store.get_batch(valid_batch.id)).status == "completed"

    @pytest.mark.asyncio
    async def test_reissue_during_run_processes_certificate_once(self, issuance, store, broadcaster, valid_batch):
        second = (await certs_by_business_id(store, valid_batch.id))["C2"]
        issuance.pacing = ActDuringPause(lambda: issuance.reissue_certificate(second.id))

        await run_batch(issuance, valid_batch.id)
        await issuance.join()

        assert len(certificate_events(broadcaster.events, "certificateStarted", second.id)) == 1
        assert len(certificate_events(broadcaster.events, "certificateCompleted", second.id)) == 1
        assert (await store.get_certificate(second.id)).status == "issued"
        assert (await store.get_batch(valid_batch.id)).status == "completed"

    @pytest.mark.asyncio
    async def test_manual_processing_during_run_is_not_repeated(self, issuance, store, broadcaster, valid_batch):
        second = (await certs_by_business_id(store, valid_batch.id))["C2"]
        issuance.pacing = ActDuringPause(lambda: issuance.process_pending_certificate(second.id))

        await run_batch(issuance, valid_batch.id)

        processed = await store.get_certificate(second.id)
        assert processed.status == "issued"
        assert len(certificate_events(broadcaster.events, "certificateStarted", second.id)) == 1
        assert broadcaster.types()[-1] == "batchCompleted"


class TestOperatorActions:
    @pytest.mark.asyncio
    async def test_retry_failed_certificate(self, issuance, store, blobs, valid_batch):
        first = (await certs_by_business_id(store, valid_batch.id))["C1"]
        key = source_pdf_key(first.project_id, first.batch_id, first.filename)
        good_pdf = await blobs.read_bytes(key)
        await blobs.write_bytes(key, b"garbage")
        await run_batch(issuance, valid_batch.id)
        assert (await store.get_certificate(first.id)).status == "failed"

        await blobs.write_bytes(key, good_pdf)
        await issuance.retry_certificate(first.id)

        reset = await store.get_certificate(first.id)
        assert reset.status == "pending"
        assert reset.error_message is None
        assert reset.processing_started_at is None
        assert reset.processing_completed_at is None

        await issuance.join()
        retried = await store.get_certificate(first.id)
        assert retried.status == "issued"
        assert retried.error_message is None
        assert retried.processing_started_at <= retried.processing_completed_at

    @pytest.mark.asyncio
    async def test_retry_requires_failed_status(self, issuance, store, valid_batch):
        first = (await certs_by_business_id(store, valid_batch.id))["C1"]
        with pytest.raises(CertificateStateError):
            await issuance.retry_certificate(first.id)

    @pytest.mark.asyncio
    async def test_retry_unknown_certificate(self, issuance):
        with pytest.raises(CertificateNotFoundError):
            await issuance.retry_certificate("missing")

    @pytest.mark.asyncio
    async def test_reissue_any_settled_status(self, issuance, store, broadcaster, valid_batch):
        await run_batch(issuance, valid_batch.id)
        first = (await certs_by_business_id(store, valid_batch.id))["C1"]
        broadcaster.events.clear()

        await issuance.reissue_certificate(first.id)
        await issuance.join()

        assert (await store.get_certificate(first.id)).status == "issued"
        assert broadcaster.types() == ["certificateStarted", "certificateCompleted"]

    @pytest.mark.asyncio
    async def test_bulk_retry_only_touches_failed(self, issuance, store, blobs, valid_batch):
        certs = await certs_by_business_id(store, valid_batch.id)
        key = source_pdf_key(certs["C1"].project_id, valid_batch.id, certs["C1"].filename)
        good_pdf = await blobs.read_bytes(key)
        await blobs.write_bytes(key, b"garbage")
        await run_batch(issuance, valid_batch.id)
        issued_before = await store.get_certificate(certs["C2"].id)

        await blobs.write_bytes(key, good_pdf)
        count = await issuance.bulk_retry_certificates([certs["C1"].id, certs["C2"].id])
        await issuance.join()

        assert count == 1
        assert (await store.get_certificate(certs["C1"].id)).status == "issued"
        issued_after = await store.get_certificate(certs["C2"].id)
        assert issued_after.processing_started_at == issued_before.processing_started_at

    @pytest.mark.asyncio
    async def test_bulk_retry_without_failed_certificates(self, issuance, store, valid_batch):
        await run_batch(issuance, valid_batch.id)
        ids = [c.id for c in await store.find_certificates(batch_id=valid_batch.id)]

        with pytest.raises(NoMatchingCertificatesError):
            await issuance.bulk_retry_certificates(ids)

    @pytest.mark.asyncio
    async def test_bulk_reissue(self, issuance, store, valid_batch):
        await run_batch(issuance, valid_batch.id)
        ids = [c.id for c in await store.find_certificates(batch_id=valid_batch.id)]

        assert await issuance.bulk_reissue_certificates(ids) == 2
        await issuance.join()
        assert all(c.status == "issued" for c in await store.find_certificates(batch_id=valid_batch.id))

    @pytest.mark.asyncio
    async def test_bulk_reissue_with_unknown_ids(self, issuance):
        with pytest.raises(NoMatchingCertificatesError):
            await issuance.bulk_reissue_certificates(["nope"])

    @pytest.mark.asyncio
    async def test_republish_refreshes_url_only(self, issuance, store, broadcaster, valid_batch):
        await run_batch(issuance, valid_batch.id)
        first = (await certs_by_business_id(store, valid_batch.id))["C1"]

        updated = await issuance.republish_certificate(first.id)

        assert updated.status == "issued"
        assert updated.verification_url.startswith("https://verify.test?id=C1&t=")
        assert updated.issued_pdf_path == first.issued_pdf_path
        assert updated.processing_completed_at == first.processing_completed_at
        assert broadcaster.types()[-1] == "certificateRepublished"

    @pytest.mark.asyncio
    async def test_republish_requires_issued(self, issuance, store, valid_batch):
        first = (await certs_by_business_id(store, valid_batch.id))["C1"]
        with pytest.raises(CertificateStateError):
            await issuance.republish_certificate(first.id)

    @pytest.mark.asyncio
    async def test_process_pending_certificate(self, issuance, store, valid_batch):
        first = (await certs_by_business_id(store, valid_batch.id))["C1"]

        processed = await issuance.process_pending_certificate(first.id)

        assert processed.status == "issued"
        with pytest.raises(CertificateStateError):
            await issuance.process_pending_certificate(first.id)


class TestStatusAndRecovery:
    @pytest.mark.asyncio
    async def test_batch_status_counts(self, issuance, store, blobs, valid_batch):
        first = (await certs_by_business_id(store, valid_batch.id))["C1"]
        await blobs.write_bytes(source_pdf_key(first.project_id, first.batch_id, first.filename), b"garbage")

        status = await issuance.get_batch_status(valid_batch.id)
        assert status["status_counts"] == {"pending": 2}
        assert status["is_processing"] is False

        await run_batch(issuance, valid_batch.id)

        status = await issuance.get_batch_status(valid_batch.id)
        assert status["batch"].status == "completed"
        assert len(status["certificates"]) == 2
        assert status["status_counts"] == {"failed": 1, "issued": 1}

    @pytest.mark.asyncio
    async def test_status_of_unknown_batch(self, issuance):
        with pytest.raises(BatchNotFoundError):
            await issuance.get_batch_status("missing")

    @pytest.mark.asyncio
    async def test_reconcile_fails_stale_processing_batches(self, issuance, store, valid_batch):
        first = (await certs_by_business_id(store, valid_batch.id))["C1"]
        await store.update_batch(valid_batch.id, status="processing")
        await store.update_certificate(first.id, status="in-progress", processing_started_at=utcnow())
        store.batches[valid_batch.id] = store.batches[valid_batch.id].model_copy(
            update={"updated_at": utcnow() - timedelta(hours=2)}
        )

        assert await issuance.reconcile_stale_batches() == 1

        batch = await store.get_batch(valid_batch.id)
        assert batch.status == "failed"
        assert "interrupted" in batch.error_message
        certs = await certs_by_business_id(store, valid_batch.id)
        assert certs["C1"].status == "failed"
        assert certs["C2"].status == "pending"

        await issuance.retry_certificate(first.id)
        await issuance.join()
        assert (await store.get_certificate(first.id)).status == "issued"

    @pytest.mark.asyncio
    async def test_reconcile_counts_only_batches_it_failed(self, issuance, store, valid_batch):
        await store.update_batch(valid_batch.id, status="processing")
        store.batches[valid_batch.id] = store.batches[valid_batch.id].model_copy(
            update={"updated_at": utcnow() - timedelta(hours=2)}
        )
        issuance.registry.claim(valid_batch.id)

        assert await issuance.reconcile_stale_batches() == 0
        assert (await store.get_batch(valid_batch.id)).status == "processing"

    @pytest.mark.asyncio
    async def test_reconcile_ignores_recent_batches(self, issuance, store, valid_batch):
        await store.update_batch(valid_batch.id, status="processing")

        assert await issuance.reconcile_stale_batches() == 0
        assert (await store.get_batch(valid_batch.id)).status == "processing"


def test_registry_claim_is_exclusive():
    registry = ProcessingRegistry()

    assert registry.claim("b1") is True
    assert registry.claim("b1") is False
    assert registry.claim("b2") is True
    registry.release("b1")
    assert registry.claim("b1") is True

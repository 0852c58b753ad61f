import threading
from contextlib import contextmanager

import pytest

from models.audit import AuditQuery
from models.enums import (
    AuditAction, ClassifierVerdict, ModerationStatus, ReportReason, ReportStatus,
    SubjectType, TemplateKind
)
from models.errors import (
    ConcurrencyConflictError, DuplicateReportError, InvalidInputError,
    MediaNotFoundError, ReportNotFoundError, SelfReportError, TransientModerationError
)

from conftest import ADMINS, MEDIA_ID, OWNER, verdict


def test_report_is_recorded_and_counted(services, media):
    submission = services.reports.submit_report(
        MEDIA_ID, "user-1", ReportReason.SPAM, description="  Repeated promo links  ", ip_address="10.0.0.9"
    )

    assert submission.report_count == 1
    assert submission.report.status == ReportStatus.PENDING
    assert submission.report.description == "Repeated promo links"
    assert services.engine.get_record(MEDIA_ID).report_count == 1

    entry = services.audit.query(AuditQuery(action=AuditAction.REPORT_SUBMITTED)).entries[0]
    assert entry.actor_id == "user-1"
    assert entry.metadata["report_id"] == submission.report.id
    assert entry.ip_address == "10.0.0.9"


def test_reason_can_be_given_as_string(reports, media):
    submission = reports.submit_report(MEDIA_ID, "user-1", "non_gospel_content")
    assert submission.report.reason == ReportReason.NON_GOSPEL_CONTENT


def test_self_report_is_refused_without_side_effects(services, media):
    with pytest.raises(SelfReportError) as exc_info:
        services.reports.submit_report(MEDIA_ID, OWNER, ReportReason.OTHER)

    assert str(exc_info.value) == "You cannot report your own content"
    assert services.engine.get_record(MEDIA_ID).report_count == 0
    assert services.store.list_reports(MEDIA_ID) == []
    assert services.audit.query(AuditQuery(action=AuditAction.REPORT_SUBMITTED)).total == 0


def test_duplicate_report_is_refused(services, media):
    services.reports.submit_report(MEDIA_ID, "user-1", ReportReason.SPAM)

    with pytest.raises(DuplicateReportError) as exc_info:
        services.reports.submit_report(MEDIA_ID, "user-1", ReportReason.VIOLENCE)

    assert str(exc_info.value) == "You have already reported this media"
    assert services.engine.get_record(MEDIA_ID).report_count == 1
    assert len(services.store.list_reports(MEDIA_ID)) == 1


def test_invalid_input_is_rejected(reports, media):
    with pytest.raises(InvalidInputError):
        reports.submit_report(MEDIA_ID, "user-1", "not_a_reason")
    with pytest.raises(InvalidInputError):
        reports.submit_report(MEDIA_ID, "user-1", ReportReason.OTHER, description="x" * 1001)
    with pytest.raises(InvalidInputError):
        reports.submit_report(MEDIA_ID, "", ReportReason.OTHER)


def test_report_on_unknown_media(reports):
    with pytest.raises(MediaNotFoundError):
        reports.submit_report("missing", "user-1", ReportReason.SPAM)


def test_third_report_escalates_approved_media(services, transport, media):
    services.engine.apply_classification(verdict(ClassifierVerdict.CLEAN))

    for reporter in ("user-1", "user-2"):
        services.reports.submit_report(MEDIA_ID, reporter, ReportReason.NON_GOSPEL_CONTENT)
    assert services.engine.get_record(MEDIA_ID).status == ModerationStatus.APPROVED

    submission = services.reports.submit_report(MEDIA_ID, "user-3", ReportReason.NON_GOSPEL_CONTENT)

    record = services.engine.get_record(MEDIA_ID)
    assert submission.report_count == 3
    assert record.status == ModerationStatus.UNDER_REVIEW
    assert record.threshold_escalated
    assert sorted(transport.deliveries(TemplateKind.REPORT_THRESHOLD_REACHED)) == sorted(
        (admin, TemplateKind.REPORT_THRESHOLD_REACHED) for admin in ADMINS
    )

    services.reports.submit_report(MEDIA_ID, "user-4", ReportReason.SPAM)
    assert len(transport.deliveries(TemplateKind.REPORT_THRESHOLD_REACHED)) == len(ADMINS)
    escalations = services.audit.query(AuditQuery(action=AuditAction.REPORT_THRESHOLD_REACHED))
    assert escalations.total == 1


def test_reports_on_rejected_media_never_resurface_it(services, transport, media):
    services.engine.apply_classification(verdict(ClassifierVerdict.REJECTED))
    transport.sent.clear()

    for i in range(4):
        services.reports.submit_report(MEDIA_ID, f"user-{i}", ReportReason.BLASPHEMY)

    record = services.engine.get_record(MEDIA_ID)
    assert record.report_count == 4
    assert record.status == ModerationStatus.REJECTED
    assert not record.threshold_escalated
    assert transport.deliveries(TemplateKind.REPORT_THRESHOLD_REACHED) == []


def test_reports_after_overriding_a_rejection_return_media_to_review(services, transport, media):
    services.engine.apply_classification(verdict(ClassifierVerdict.REJECTED))
    for i in range(3):
        services.reports.submit_report(MEDIA_ID, f"user-{i}", ReportReason.SPAM)
    services.engine.apply_admin_decision(MEDIA_ID, "admin-1", ModerationStatus.APPROVED, admin_notes="Misclassified hymn")
    transport.sent.clear()

    services.reports.submit_report(MEDIA_ID, "user-9", ReportReason.SPAM)

    record = services.engine.get_record(MEDIA_ID)
    assert record.status == ModerationStatus.UNDER_REVIEW
    assert record.report_count == 4
    assert len(transport.deliveries(TemplateKind.REPORT_THRESHOLD_REACHED)) == len(ADMINS)
    assert services.audit.query(AuditQuery(action=AuditAction.REPORT_THRESHOLD_REACHED)).total == 1


# ============================================
# Report notices
# ============================================

def test_each_report_notifies_every_admin(services, transport, media):
    services.engine.apply_classification(verdict(ClassifierVerdict.CLEAN))

    submission = services.reports.submit_report(MEDIA_ID, "user-1", ReportReason.NON_GOSPEL_CONTENT)

    assert sorted(transport.deliveries(TemplateKind.CONTENT_REPORTED)) == sorted(
        (admin, TemplateKind.CONTENT_REPORTED) for admin in ADMINS
    )
    message = transport.sent[0]
    assert message.title == "New Content Report"
    assert message.body == 'user-1 reported "Sunday Worship" - Reason: non_gospel_content. Total reports: 1.'
    assert message.priority == "medium"
    assert message.payload.report_id == submission.report.id
    assert services.engine.get_record(MEDIA_ID).status == ModerationStatus.APPROVED


def test_report_notices_turn_high_priority_at_threshold(services, transport, media):
    services.engine.apply_classification(verdict(ClassifierVerdict.CLEAN))

    for i in range(4):
        services.reports.submit_report(MEDIA_ID, f"user-{i}", ReportReason.SPAM)

    notices = [m for m in transport.sent if m.template_kind == TemplateKind.CONTENT_REPORTED]
    assert len(notices) == 4 * len(ADMINS)
    assert [m.priority for m in notices if m.recipient_id == ADMINS[0]] == ["medium", "medium", "high", "high"]
    assert len(transport.deliveries(TemplateKind.REPORT_THRESHOLD_REACHED)) == len(ADMINS)


def test_refused_reports_send_no_notice(services, transport, media):
    services.reports.submit_report(MEDIA_ID, "user-1", ReportReason.SPAM)
    transport.sent.clear()

    with pytest.raises(DuplicateReportError):
        services.reports.submit_report(MEDIA_ID, "user-1", ReportReason.SPAM)
    with pytest.raises(SelfReportError):
        services.reports.submit_report(MEDIA_ID, OWNER, ReportReason.SPAM)

    assert transport.sent == []
    assert services.store.pending_intents() == []


def test_concurrent_reports_escalate_exactly_once(services, transport, media):
    services.engine.apply_classification(verdict(ClassifierVerdict.CLEAN))
    reporters = [f"user-{i}" for i in range(25)]
    barrier = threading.Barrier(len(reporters))
    errors = []

    def submit(reporter_id):
        barrier.wait()
        try:
            services.reports.submit_report(MEDIA_ID, reporter_id, ReportReason.SPAM)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=submit, args=(r,)) for r in reporters]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    record = services.engine.get_record(MEDIA_ID)
    assert record.report_count == len(reporters)
    assert record.status == ModerationStatus.UNDER_REVIEW
    assert services.audit.query(AuditQuery(action=AuditAction.REPORT_THRESHOLD_REACHED)).total == 1
    assert len(transport.deliveries(TemplateKind.REPORT_THRESHOLD_REACHED)) == len(ADMINS)


def test_concurrent_duplicates_count_once(services, media):
    barrier = threading.Barrier(10)
    outcomes = []

    def submit():
        barrier.wait()
        try:
            services.reports.submit_report(MEDIA_ID, "user-1", ReportReason.SPAM)
            outcomes.append("accepted")
        except DuplicateReportError:
            outcomes.append("duplicate")

    threads = [threading.Thread(target=submit) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("accepted") == 1
    assert services.engine.get_record(MEDIA_ID).report_count == 1


def _flaky_transactions(monkeypatch, store, failures):
    original = store.transaction
    calls = {"count": 0}

    @contextmanager
    def flaky(media_id):
        calls["count"] += 1
        if calls["count"] <= failures:
            raise ConcurrencyConflictError("could not obtain lock")
        with original(media_id) as tx:
            yield tx

    monkeypatch.setattr(store, "transaction", flaky)
    return calls


def test_conflicts_are_retried(services, media, monkeypatch):
    _flaky_transactions(monkeypatch, services.store, failures=2)

    submission = services.reports.submit_report(MEDIA_ID, "user-1", ReportReason.SPAM)

    assert submission.report_count == 1


def test_conflicts_past_retry_budget_surface_as_transient(services, media, monkeypatch):
    _flaky_transactions(monkeypatch, services.store, failures=100)

    with pytest.raises(TransientModerationError):
        services.reports.submit_report(MEDIA_ID, "user-1", ReportReason.SPAM)

    assert services.store.list_reports(MEDIA_ID) == []


# ============================================
# Admin review
# ============================================

def test_review_report_updates_report_but_not_media(services, media):
    submission = services.reports.submit_report(MEDIA_ID, "user-1", ReportReason.COPYRIGHT)

    report = services.reports.review_report(
        submission.report.id, "admin-1", ReportStatus.DISMISSED, admin_notes="Licensed track"
    )

    assert report.status == ReportStatus.DISMISSED
    assert report.reviewed_by == "admin-1"
    assert report.reviewed_at is not None
    assert services.store.get_report(report.id).admin_notes == "Licensed track"
    assert services.engine.get_record(MEDIA_ID).status == ModerationStatus.PENDING

    entry = services.audit.query(AuditQuery(action=AuditAction.REPORT_REVIEWED)).entries[0]
    assert entry.subject_type == SubjectType.REPORT
    assert entry.subject_id == report.id
    assert entry.metadata["previous_status"] == "pending"


def test_review_reads_the_current_report_state(services, media, monkeypatch):
    submission = services.reports.submit_report(MEDIA_ID, "user-1", ReportReason.SPAM)
    stale = services.store.get_report(submission.report.id)
    services.reports.review_report(stale.id, "admin-1", ReportStatus.REVIEWED)
    monkeypatch.setattr(services.store, "get_report", lambda report_id: stale)

    services.reports.review_report(stale.id, "admin-2", ReportStatus.RESOLVED, admin_notes="Links removed")

    entries = services.audit.query(AuditQuery(action=AuditAction.REPORT_REVIEWED)).entries
    assert entries[0].actor_id == "admin-2"
    assert entries[0].metadata["previous_status"] == "reviewed"
    monkeypatch.undo()
    assert services.store.get_report(stale.id).status == ReportStatus.RESOLVED


def test_review_report_rejects_pending_status(services, media):
    submission = services.reports.submit_report(MEDIA_ID, "user-1", ReportReason.SPAM)

    with pytest.raises(InvalidInputError):
        services.reports.review_report(submission.report.id, "admin-1", ReportStatus.PENDING)


def test_review_unknown_report(reports):
    with pytest.raises(ReportNotFoundError):
        reports.review_report("missing", "admin-1", ReportStatus.RESOLVED)


def test_pending_reports_are_paginated(services, media):
    for i in range(5):
        services.reports.submit_report(MEDIA_ID, f"user-{i}", ReportReason.SPAM)
    first = services.store.list_reports(MEDIA_ID)[0]
    services.reports.review_report(first.id, "admin-1", ReportStatus.RESOLVED)

    page, total = services.reports.list_pending_reports(page=2, limit=3)

    assert total == 4
    assert len(page) == 1
    assert all(r.status == ReportStatus.PENDING for r in page)

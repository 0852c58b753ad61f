from concurrent.futures import ThreadPoolExecutor

from lib.stores import InMemoryModerationStore
from models.enums import ClassifierVerdict, ModerationStatus, NotificationAudience, TemplateKind
from models.notification import NotificationIntent, NotificationPayload
from services.notification_dispatcher import (
    LoggingTransport, NotificationDispatcher, OutboxRelay, StaticUserDirectory, render
)
from services.pipeline import build_services

from conftest import ADMINS, MEDIA_ID, OWNER, FailingDirectory, RecordingTransport, verdict


def make_intent(audience=NotificationAudience.ADMINS, kind=TemplateKind.FLAGGED_FOR_REVIEW, owner_id=OWNER):
    return NotificationIntent(
        audience=audience,
        template_kind=kind,
        payload=NotificationPayload(
            media_id=MEDIA_ID,
            media_title="Evening Hymns",
            owner_id=owner_id,
            flags=["unclear_content"],
            report_count=3,
            reason="Needs a second look",
        ),
    )


def test_admin_intent_fans_out_to_each_admin_once():
    transport = RecordingTransport()
    dispatcher = NotificationDispatcher(StaticUserDirectory(["a1", "a2", "a1"]), transport)

    report = dispatcher.dispatch(make_intent())

    assert report.recipients == ["a1", "a2"]
    assert report.delivered == ["a1", "a2"]
    assert [m.recipient_id for m in transport.sent] == ["a1", "a2"]


def test_owner_intent_goes_to_owner_only():
    transport = RecordingTransport()
    dispatcher = NotificationDispatcher(StaticUserDirectory(ADMINS), transport)

    dispatcher.dispatch(make_intent(NotificationAudience.OWNER, TemplateKind.CONTENT_REJECTED))

    assert transport.deliveries() == [(OWNER, TemplateKind.CONTENT_REJECTED)]


def test_one_failed_recipient_does_not_block_others():
    transport = RecordingTransport(fail_for=["a1"], raise_for=["a2"])
    dispatcher = NotificationDispatcher(StaticUserDirectory(["a1", "a2", "a3"]), transport)

    report = dispatcher.dispatch(make_intent())

    assert report.failed == ["a1", "a2"]
    assert report.delivered == ["a3"]


def test_directory_failure_drops_intent_without_raising():
    transport = RecordingTransport()
    dispatcher = NotificationDispatcher(FailingDirectory(), transport)

    report = dispatcher.dispatch(make_intent())

    assert report.dropped_reason.startswith("recipient lookup failed")
    assert transport.sent == []


def test_intent_without_recipients_is_dropped():
    dispatcher = NotificationDispatcher(StaticUserDirectory([]), RecordingTransport())

    admin_report = dispatcher.dispatch(make_intent())
    owner_report = dispatcher.dispatch(make_intent(NotificationAudience.OWNER, owner_id=None))

    assert admin_report.dropped_reason == "no recipients"
    assert owner_report.dropped_reason == "no recipients"


def test_templates_render_payload_fields():
    threshold = render(make_intent(kind=TemplateKind.REPORT_THRESHOLD_REACHED), "a1")
    rejected = render(make_intent(kind=TemplateKind.CONTENT_REJECTED), OWNER)

    assert threshold.title == "Content Reported Multiple Times"
    assert '"Evening Hymns" has been reported 3 times' in threshold.body
    assert "Reason: Needs a second look" in rejected.body
    assert "unclear_content" in rejected.body


def test_logging_transport_always_succeeds():
    assert LoggingTransport().send(render(make_intent(), "a1"))


def test_drain_marks_intents_dispatched_whatever_the_outcome():
    store = InMemoryModerationStore()
    with store.transaction(MEDIA_ID) as tx:
        tx.enqueue(make_intent())
        tx.enqueue(make_intent(NotificationAudience.OWNER, TemplateKind.CONTENT_REJECTED))
    dispatcher = NotificationDispatcher(FailingDirectory(), RecordingTransport())

    reports = dispatcher.drain_outbox(store)

    assert len(reports) == 2
    assert store.pending_intents() == []
    assert len(store.all_intents()) == 2


def test_transition_commits_even_when_directory_is_down(settings):
    transport = RecordingTransport()
    services = build_services(
        settings=settings,
        store=InMemoryModerationStore(),
        directory=FailingDirectory(),
        transport=transport,
    )
    services.engine.ensure_record(MEDIA_ID)

    outcome = services.engine.apply_classification(verdict(ClassifierVerdict.FLAGGED))

    assert outcome.record.status == ModerationStatus.UNDER_REVIEW
    assert services.engine.get_record(MEDIA_ID).status == ModerationStatus.UNDER_REVIEW
    assert transport.sent == []
    assert services.store.pending_intents() == []


def test_transition_commits_even_when_transport_fails(settings):
    transport = RecordingTransport(raise_for=[OWNER, *ADMINS])
    services = build_services(
        settings=settings,
        store=InMemoryModerationStore(),
        directory=StaticUserDirectory(ADMINS),
        transport=transport,
    )
    services.engine.ensure_record(MEDIA_ID)

    services.engine.apply_classification(verdict(ClassifierVerdict.REJECTED))

    assert services.engine.get_record(MEDIA_ID).status == ModerationStatus.REJECTED


def test_relay_drains_on_executor():
    store = InMemoryModerationStore()
    transport = RecordingTransport()
    relay = OutboxRelay(
        store,
        NotificationDispatcher(StaticUserDirectory(ADMINS), transport),
        executor=ThreadPoolExecutor(max_workers=1),
    )
    with store.transaction(MEDIA_ID) as tx:
        tx.enqueue(make_intent())

    relay.wake()
    relay.shutdown()

    assert len(transport.sent) == len(ADMINS)
    assert store.pending_intents() == []


def test_relay_drains_in_batches():
    store = InMemoryModerationStore()
    transport = RecordingTransport()
    relay = OutboxRelay(store, NotificationDispatcher(StaticUserDirectory(["a1"]), transport), batch_size=2)
    with store.transaction(MEDIA_ID) as tx:
        for _ in range(5):
            tx.enqueue(make_intent())

    reports = relay.drain()

    assert len(reports) == 5
    assert len(transport.sent) == 5


def test_relay_swallows_store_errors(monkeypatch):
    store = InMemoryModerationStore()
    relay = OutboxRelay(store, NotificationDispatcher(StaticUserDirectory(ADMINS), RecordingTransport()))

    def broken(limit=100):
        raise RuntimeError("outbox table locked")

    monkeypatch.setattr(store, "pending_intents", broken)

    assert relay.drain() == []

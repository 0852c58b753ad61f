import pytest

from lib.config import ModerationSettings
from lib.stores import InMemoryModerationStore
from models.enums import ClassifierVerdict, TemplateKind
from models.errors import DirectoryUnavailableError, TransportError
from models.moderation import ClassificationResult, MediaSummary
from services.notification_dispatcher import (
    NotificationTransport, StaticUserDirectory, UserDirectory
)
from services.pipeline import build_services

ADMINS = ["admin-1", "admin-2"]
OWNER = "owner-1"
MEDIA_ID = "media-1"


class RecordingTransport(NotificationTransport):
    """Keeps every delivered message; can be told to fail for some recipients."""

    def __init__(self, fail_for=None, raise_for=None):
        self.sent = []
        self.fail_for = set(fail_for or [])
        self.raise_for = set(raise_for or [])

    def send(self, message):
        if message.recipient_id in self.raise_for:
            raise TransportError(f"smtp down for {message.recipient_id}")
        if message.recipient_id in self.fail_for:
            return False
        self.sent.append(message)
        return True

    def deliveries(self, template_kind: TemplateKind = None):
        return [
            (m.recipient_id, m.template_kind)
            for m in self.sent
            if template_kind is None or m.template_kind == template_kind
        ]


class FailingDirectory(UserDirectory):
    def active_admin_ids(self):
        raise DirectoryUnavailableError("directory down")


@pytest.fixture
def settings():
    return ModerationSettings(notification_workers=0, admin_user_ids=ADMINS)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def directory():
    return StaticUserDirectory(ADMINS)


@pytest.fixture
def services(settings, transport, directory):
    services = build_services(
        settings=settings,
        store=InMemoryModerationStore(),
        directory=directory,
        transport=transport,
    )
    services.reports.retry_backoff_seconds = 0
    return services


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
def engine(services):
    return services.engine


@pytest.fixture
def reports(services):
    return services.reports


@pytest.fixture
def media(engine):
    summary = MediaSummary(media_id=MEDIA_ID, owner_id=OWNER, title="Sunday Worship")
    engine.register_media(summary)
    return summary


def verdict(verdict: ClassifierVerdict, media_id: str = MEDIA_ID, flags=(), reason=None):
    return ClassificationResult(
        media_id=media_id,
        verdict=verdict,
        flags=list(flags),
        confidence=0.9,
        reason=reason,
    )

"""
Wires the moderation services together from settings.
Shared by the API process, the pipeline runner and the tests.
"""

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

from lib.config import ModerationSettings, get_settings
from lib.database import DatabaseConnection, PostgresModerationStore, db
from lib.kafka_client import MessageBroker, broker as default_broker
from lib.stores import InMemoryModerationStore, ModerationStore
from services.audit_service import AuditRecorder
from services.moderation_engine import ModerationEngine
from services.notification_dispatcher import (
    KafkaNotificationTransport, LoggingTransport, NotificationDispatcher,
    NotificationTransport, OutboxRelay, PostgresUserDirectory,
    StaticUserDirectory, UserDirectory
)
from services.report_service import ReportAggregator

logger = logging.getLogger(__name__)


@dataclass
class ModerationServices:
    settings: ModerationSettings
    store: ModerationStore
    audit: AuditRecorder
    dispatcher: NotificationDispatcher
    relay: OutboxRelay
    engine: ModerationEngine
    reports: ReportAggregator
    database: Optional[DatabaseConnection] = None
    broker: Optional[MessageBroker] = None

    def close(self) -> None:
        self.relay.shutdown()
        if self.broker is not None:
            self.broker.close()
        if self.database is not None:
            self.database.close()


def build_services(
    settings: Optional[ModerationSettings] = None,
    store: Optional[ModerationStore] = None,
    directory: Optional[UserDirectory] = None,
    transport: Optional[NotificationTransport] = None,
    executor: Optional[Executor] = None,
) -> ModerationServices:
    """
    Build every service; explicit arguments override what settings select.
    Without explicit settings the module-level db and broker clients are used.
    """
    from_env = settings is None
    settings = settings or get_settings()
    database = None
    broker = None

    if store is None:
        if settings.store_backend == "postgres":
            database = db if from_env else DatabaseConnection(settings.database)
            store = PostgresModerationStore(database)
        else:
            store = InMemoryModerationStore()
    logger.info(f"Using {type(store).__name__}")

    if directory is None:
        if database is not None and not settings.admin_user_ids:
            directory = PostgresUserDirectory(database)
        else:
            directory = StaticUserDirectory(settings.admin_user_ids)

    if transport is None:
        if settings.notification_transport == "kafka":
            broker = default_broker if from_env else MessageBroker(settings.kafka)
            transport = KafkaNotificationTransport(broker)
        else:
            transport = LoggingTransport()

    if executor is None and settings.notification_workers > 0:
        executor = ThreadPoolExecutor(
            max_workers=settings.notification_workers, thread_name_prefix="outbox"
        )

    audit = AuditRecorder(store)
    dispatcher = NotificationDispatcher(directory, transport)
    relay = OutboxRelay(store, dispatcher, executor=executor)
    engine = ModerationEngine(store, settings=settings, audit=audit, relay=relay)
    reports = ReportAggregator(store, engine, settings=settings, audit=audit)

    return ModerationServices(
        settings=settings,
        store=store,
        audit=audit,
        dispatcher=dispatcher,
        relay=relay,
        engine=engine,
        reports=reports,
        database=database,
        broker=broker,
    )

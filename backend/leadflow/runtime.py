import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from motor.motor_asyncio import AsyncIOMotorDatabase

from leadflow.db.init import init_db
from leadflow.db.store import DocumentStore
from leadflow.services.audio_generation import AudioGenerationClient
from leadflow.services.drip_scheduler import DripScheduler
from leadflow.services.identity import IdentityResolver
from leadflow.services.inbound import InboundMessageHandler
from leadflow.services.job_pipeline import JobPipeline
from leadflow.services.llm import LLMService
from leadflow.services.media import MediaProcessor
from leadflow.services.outbound import Messenger
from leadflow.services.script_pipeline import ScriptPipeline
from leadflow.services.sequence_catalog import SequenceCatalog
from leadflow.services.storage import MediaStorage
from leadflow.services.transport import WhatsAppGatewayTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Services:
    store: DocumentStore
    catalog: SequenceCatalog
    resolver: IdentityResolver
    transport: WhatsAppGatewayTransport
    messenger: Messenger
    storage: MediaStorage
    drip: DripScheduler
    inbound: InboundMessageHandler
    jobs: JobPipeline
    scripts: ScriptPipeline


def build_services(database: AsyncIOMotorDatabase) -> Services:
    """Wire the core against MongoDB and the real external collaborators."""
    store = DocumentStore(database)
    catalog = SequenceCatalog(store)
    resolver = IdentityResolver(store)
    transport = WhatsAppGatewayTransport()
    messenger = Messenger(store, transport, resolver)
    storage = MediaStorage(database)
    llm = LLMService()
    return Services(
        store=store,
        catalog=catalog,
        resolver=resolver,
        transport=transport,
        messenger=messenger,
        storage=storage,
        drip=DripScheduler(store, catalog, messenger),
        inbound=InboundMessageHandler(store, resolver, catalog),
        jobs=JobPipeline(store, catalog, llm, AudioGenerationClient(), MediaProcessor(), storage, messenger),
        scripts=ScriptPipeline(store, catalog, llm, messenger),
    )


class WorkerRuntime:
    """
    Per-process state for Celery workers: one event loop that every task
    runs on (the Mongo client is bound to it) and the services built on top,
    including the process-lifetime sequence catalog.
    """

    def __init__(self):
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.services: Optional[Services] = None

    def start(self):
        if self.services is not None:
            return
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        database = self.loop.run_until_complete(init_db())
        self.services = build_services(database)
        logger.info("Worker runtime ready")

    def run(self, work: Callable[[Services], Awaitable[T]]) -> T:
        self.start()
        return self.loop.run_until_complete(work(self.services))


runtime = WorkerRuntime()

from dataclasses import dataclass

from invoice_pipeline.cleanup.scheduler import CleanupScheduler
from invoice_pipeline.config.settings import Settings
from invoice_pipeline.credits.ledger import CreditLedger
from invoice_pipeline.database.repositories.cleanup_repository import CleanupRepository
from invoice_pipeline.database.repositories.job_repository import JobRepository
from invoice_pipeline.database.repositories.session_repository import SessionRepository
from invoice_pipeline.extraction.factory import ExtractionClientFactory
from invoice_pipeline.jobs.state_machine import JobStateMachine
from invoice_pipeline.pdf.factory import PageSplitterFactory
from invoice_pipeline.postprocessing.file_namer import FileNamer
from invoice_pipeline.postprocessing.post_processor import PostProcessor
from invoice_pipeline.sessions.manager import SessionManager
from invoice_pipeline.storage.base import BaseStorage
from invoice_pipeline.storage.factory import StorageFactory
from invoice_pipeline.worker.dispatcher import Dispatcher
from invoice_pipeline.worker.worker import Worker


@dataclass
class Services:
    """Wired components shared by the worker and the HTTP API."""

    settings: Settings
    storage: BaseStorage
    session_repo: SessionRepository
    job_repo: JobRepository
    ledger: CreditLedger
    state_machine: JobStateMachine
    scheduler: CleanupScheduler
    session_manager: SessionManager


def build_services(settings: Settings, storage: BaseStorage | None = None) -> Services:
    """Build every component with the adapters selected in settings."""
    storage = storage if storage is not None else StorageFactory.create(settings)
    session_repo = SessionRepository()
    job_repo = JobRepository(settings.job_lease_seconds)
    ledger = CreditLedger()
    splitter = PageSplitterFactory.create(settings)
    state_machine = JobStateMachine(
        job_repo=job_repo,
        session_repo=session_repo,
        ledger=ledger,
        storage=storage,
        extraction=ExtractionClientFactory.create(settings),
        splitter=splitter,
        namer=FileNamer(settings.naming_template),
        settings=settings,
    )
    scheduler = CleanupScheduler(
        session_repo=session_repo,
        job_repo=job_repo,
        cleanup_repo=CleanupRepository(),
        storage=storage,
    )
    session_manager = SessionManager(
        session_repo=session_repo,
        job_repo=job_repo,
        storage=storage,
        splitter=splitter,
        post_processor=PostProcessor(job_repo, session_repo, storage, settings),
        settings=settings,
        scheduler=scheduler,
    )
    return Services(
        settings=settings,
        storage=storage,
        session_repo=session_repo,
        job_repo=job_repo,
        ledger=ledger,
        state_machine=state_machine,
        scheduler=scheduler,
        session_manager=session_manager,
    )


def build_worker(services: Services) -> Worker:
    dispatcher = Dispatcher(services.state_machine, services.settings.concurrency_cap())
    return Worker(
        job_repo=services.job_repo,
        state_machine=services.state_machine,
        session_manager=services.session_manager,
        scheduler=services.scheduler,
        ledger=services.ledger,
        dispatcher=dispatcher,
        settings=services.settings,
    )

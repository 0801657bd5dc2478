"""Main entrypoint and application factory for the Statement Importer API.

This module configures logging, builds the services (database, completion chains, categorization engine, job queue)
in the application lifespan, maps domain errors to HTTP responses and exposes the Scalar API reference endpoint.
It also includes the main entrypoint for running the app with Uvicorn.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse
from scalar_fastapi import get_scalar_api_reference
from sqlalchemy.engine import make_url

from app.agents.category_agent import CategoryAgent
from app.agents.column_mapper import ColumnMapper
from app.agents.receipt_agent import ReceiptExtractor
from app.agents.registry import ProviderRegistry
from app.agents.statement_agent import StatementExtractor
from app.agents.usage import UsageLogger
from app.api.routes import router
from app.categorization.engine import CategoryEngine
from app.categorization.repositories import CategoryRepository, RuleRepository, TransactionRepository
from app.core.db import get_engine, get_session_factory, init_db
from app.core.errors import (
    DomainError,
    DuplicateFileError,
    EnqueueFailure,
    ExtractionFailure,
    FileFetchError,
    UnauthorizedError,
    ValidationError,
    to_user_message,
)
from app.core.settings import Settings, get_settings
from app.core.utils import LOGGER_ROOT, ensure_dir, get_logger
from app.services.batch_coordinator import BatchCoordinator
from app.services.duplicate_detector import DuplicateDetector
from app.services.file_service import FileService
from app.services.normalizer import StatementNormalizer
from app.workers.job_runner import JobRunner
from app.workers.queue import JobQueue

logger = get_logger("statement-importer.main")

ERROR_STATUS_CODES: list[tuple[type[DomainError], int]] = [
    (ValidationError, 400),
    (UnauthorizedError, 404),
    (DuplicateFileError, 409),
    (ExtractionFailure, 422),
    (FileFetchError, 502),
    (EnqueueFailure, 503),
]


# --- Logging Setup ---
def setup_logging(settings: Settings) -> None:
    """Configure logging to file and console, and ensure the log directory exists."""
    log_path = Path(settings.log_file)
    ensure_dir(log_path.parent)
    root = get_logger(LOGGER_ROOT)
    root.setLevel(logging.INFO)
    # Add file handler for persistent logs (not colorized)
    if not any(isinstance(h, logging.FileHandler) for h in root.handlers):
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        root.addHandler(file_handler)


def status_code_for(error: DomainError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Translate a domain error into a JSON error response."""
    status_code = status_code_for(exc)
    logger.info(f"{request.method} {request.url.path} -> {status_code} {exc.code}: {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": to_user_message(exc), "code": exc.code})


def create_app(
    settings: Settings | None = None,
    queue: JobQueue | None = None,
    file_service: FileService | None = None,
) -> FastAPI:
    """Build the FastAPI application; `queue` and `file_service` replace the defaults when given."""
    settings = settings or get_settings()
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Create tables and wire services at startup; stop the workers and flush usage logs at shutdown."""
        database = make_url(settings.database_url).database
        if database and database != ":memory:":
            ensure_dir(Path(database).parent)
        engine = get_engine(settings.database_url, settings.database_echo)
        await init_db(engine)
        session_factory = get_session_factory(engine)

        usage_logger = UsageLogger(session_factory)
        extraction_chain = ProviderRegistry.build_chain(settings.extraction_providers, settings, usage_logger)
        categorization_chain = ProviderRegistry.build_chain(settings.categorization_providers, settings, usage_logger)
        if not extraction_chain.is_available:
            logger.warning("No extraction provider configured; AI column mapping and PDF or receipt reading will fail")

        categories = CategoryRepository(session_factory)
        rules = RuleRepository(session_factory, categories)
        agent = CategoryAgent(categorization_chain, settings) if categorization_chain.is_available else None
        category_engine = CategoryEngine(categories, TransactionRepository(session_factory), rules, settings, agent)
        normalizer = StatementNormalizer(
            session_factory,
            ColumnMapper(extraction_chain, settings),
            StatementExtractor(extraction_chain, settings),
            categories,
            settings,
        )

        job_queue = queue or JobQueue(workers=settings.queue_workers, max_size=settings.queue_max_size)
        coordinator = BatchCoordinator(session_factory, job_queue)
        runner = JobRunner(
            session_factory,
            coordinator,
            file_service or FileService(settings),
            DuplicateDetector(session_factory, settings.duplicate_date_window_days),
            normalizer,
            ReceiptExtractor(extraction_chain, settings),
            category_engine,
            settings,
        )
        job_queue.handler = runner.run_job
        await job_queue.start()
        await runner.discard_unfinished_documents()
        await coordinator.resume_interrupted()

        app.state.settings = settings
        app.state.session_factory = session_factory
        app.state.coordinator = coordinator
        app.state.categories = categories
        app.state.rules = rules
        app.state.queue = job_queue
        app.state.runner = runner
        logger.info(
            f"Statement Importer started: extraction={extraction_chain.providers}, "
            f"categorization={categorization_chain.providers}"
        )
        try:
            yield
        finally:
            await job_queue.stop()
            await usage_logger.drain()
            await engine.dispose()
            logger.info("Statement Importer stopped")

    app = FastAPI(
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        title="Statement Importer API",
        description="""
    The Statement Importer API ingests receipts, PDF statements and CSV/XLSX spreadsheets in batches, normalizes
    them into signed transactions, detects duplicate uploads and assigns categories.

    **Endpoints:**
    - `POST /batches`, `POST /batches/{{id}}/items`: create a batch and register its files.
    - `GET /batches`, `GET /batches/{{id}}`, `GET /batches/{{id}}/items`, `GET /batches/{{id}}/progress`.
    - `POST /batches/{{id}}/retry-failed`, `POST /items/{{id}}/retry`: retry failed files.
    - `POST /batches/{{id}}/complete`, `POST /batches/{{id}}/cancel`, `PATCH /items/{{id}}/status`.
    - `/rules`: category rule management. `GET /categories`: available categories.
    - `GET /health`: Health check endpoint.
    - `GET /scalar`: Interactive Scalar OpenAPI documentation.

    Every request names its owner in the `X-User-Id` header.
    """,
        version="1.0.0",
    )
    app.add_exception_handler(DomainError, domain_error_handler)
    app.include_router(router)

    @app.get("/scalar", include_in_schema=False)
    async def scalar_docs() -> HTMLResponse:
        """Return Scalar API reference."""
        return get_scalar_api_reference(openapi_url=app.openapi_url, title=app.title)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("app.main:app", host=settings.server_host, port=settings.server_port, reload=True)

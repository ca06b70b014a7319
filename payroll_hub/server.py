"""
Payroll Document Hub - Server

FastAPI application: MongoDB (motor) connection, service wiring, indexes and
the /api router.

Run with:
    uvicorn payroll_hub.server:app --host 0.0.0.0 --port 8001
"""

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI
from motor.motor_asyncio import AsyncIOMotorClient
from starlette.middleware.cors import CORSMiddleware

from .config import (
    AUDIT_COLLECTION, BATCH_COLLECTION, CORS_ORIGINS, DB_NAME, DOCUMENTS_COLLECTION, EMPLOYEES_COLLECTION,
    ENFORCE_WORKING_HOURS, LOG_LEVEL, MONGO_URL, SERVICE_VERSION, STORAGE_BASE_PATH, STORAGE_PROVIDER,
    TASKS_COLLECTION,
)
from .routes import (
    ROUTERS, set_batch_deps, set_documents_deps, set_generation_deps, set_health_deps, set_status_deps,
)
from .services.alerts import AlertNotifier
from .services.audit_trail import AuditTrail
from .services.batch import BatchOrchestrator
from .services.documents import DocumentLibrary
from .services.employees import RepositoryEmployeeDirectory
from .services.error_handler import ErrorHandler
from .services.generation import DocumentGenerationPipeline
from .services.health import HealthReporter
from .services.repository import MongoRepository
from .services.status_service import DocumentStatusService, make_working_hours_rule
from .services.storage import create_storage

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

mongo_client = None
db = None
pipeline = None
orchestrator = None


# ==================== LIFESPAN ====================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global mongo_client, db, pipeline, orchestrator

    logger.info("Starting Payroll Document Hub...")

    mongo_client = AsyncIOMotorClient(MONGO_URL)
    db = mongo_client[DB_NAME]

    documents = MongoRepository(db[DOCUMENTS_COLLECTION], "document_id")
    notifier = AlertNotifier()
    error_handler = ErrorHandler(notifier)
    status_service = DocumentStatusService(
        documents,
        AuditTrail(MongoRepository(db[AUDIT_COLLECTION], "audit_id")),
        error_handler,
    )
    if ENFORCE_WORKING_HOURS:
        status_service.register_business_rule("working_hours", make_working_hours_rule())

    storage = create_storage(STORAGE_PROVIDER, STORAGE_BASE_PATH)
    pipeline = DocumentGenerationPipeline(
        documents,
        status_service,
        RepositoryEmployeeDirectory(MongoRepository(db[EMPLOYEES_COLLECTION], "employee_id")),
        storage,
        tasks=MongoRepository(db[TASKS_COLLECTION], "task_id"),
        error_handler=error_handler,
    )
    orchestrator = BatchOrchestrator(
        documents,
        status_service,
        storage=storage,
        pipeline=pipeline,
        repository=MongoRepository(db[BATCH_COLLECTION], "operation_id"),
    )

    library = DocumentLibrary(documents, storage)

    set_status_deps(status_service)
    set_generation_deps(pipeline)
    set_batch_deps(orchestrator)
    set_documents_deps(library)
    set_health_deps(HealthReporter(documents, storage, status_service, pipeline=pipeline, library=library,
                                   error_handler=error_handler, notifier=notifier))

    await create_indexes()

    # Work persisted by a previous process
    recovered = await pipeline.queue.recover()
    failed = await orchestrator.recover()
    logger.info("Startup recovery: %d generation tasks re-enqueued, %d batch operations failed",
                len(recovered), len(failed))

    logger.info("Payroll Document Hub started successfully")

    yield

    logger.info("Shutting down Payroll Document Hub...")
    await orchestrator.drain()
    await pipeline.queue.drain()
    if mongo_client:
        mongo_client.close()


async def create_indexes():
    """Create database indexes."""
    await db[DOCUMENTS_COLLECTION].create_index("document_id", unique=True)
    await db[DOCUMENTS_COLLECTION].create_index(
        [("employee_id", 1), ("document_type", 1), ("period_year", 1), ("period_month", 1)]
    )
    await db[DOCUMENTS_COLLECTION].create_index("status")
    await db[DOCUMENTS_COLLECTION].create_index("created_at")

    await db[AUDIT_COLLECTION].create_index("audit_id", unique=True)
    await db[AUDIT_COLLECTION].create_index([("document_id", 1), ("changed_at", 1)])

    await db[BATCH_COLLECTION].create_index("operation_id", unique=True)
    await db[BATCH_COLLECTION].create_index([("initiated_by", 1), ("created_at", -1)])

    await db[TASKS_COLLECTION].create_index("task_id", unique=True)
    await db[EMPLOYEES_COLLECTION].create_index("employee_id", unique=True)

    logger.info("Database indexes created")


# ==================== APP ====================

app = FastAPI(
    title="Payroll Document Hub API",
    description="Payroll document generation, status workflow and batch operations",
    version=SERVICE_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

api_router = APIRouter(prefix="/api")
for router in ROUTERS:
    api_router.include_router(router)

app.include_router(api_router)

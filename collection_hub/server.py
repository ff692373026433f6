"""
ITAD Collection Hub - Main Server

Booking/Job workflow API. Routes live in /routes/, workflow logic in
/services/. Run with:

    uvicorn collection_hub.server:app --reload
"""

from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
load_dotenv()  # Load .env file before any os.environ calls
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
from typing import Dict, Any
import os
import logging

from collection_hub import __version__
from collection_hub.routes import (
    bookings_router, set_bookings_deps,
    jobs_router, set_jobs_deps,
    workflow_router, set_workflow_deps,
)
from collection_hub.services.collection_service import CollectionService
from collection_hub.services.document_trigger import DocumentTrigger
from collection_hub.services.evidence_ledger import EvidenceLedger
from collection_hub.services.milestones import MilestoneBus
from collection_hub.services.notification_dispatcher import NotificationDispatcher
from collection_hub.services.stores import WorkflowStore, MongoWorkflowStore
from collection_hub.services.workflow_orchestrator import WorkflowOrchestrator

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ==================== DATABASE ====================
MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "itad_collection_hub")

db = None
mongo_client = None


# ==================== WIRING ====================
def build_services(store: WorkflowStore, **overrides) -> Dict[str, Any]:
    """
    Assemble the workflow services around a store and subscribe the side
    effects to the milestone bus.

    Overrides: deliver, renderer, storage, clock (collaborators passed
    through to the dispatcher, document trigger and orchestrator).
    """
    clock = overrides.get("clock")
    bus = MilestoneBus()
    ledger = EvidenceLedger(store, clock=clock)
    orchestrator = WorkflowOrchestrator(store, bus, clock=clock)
    dispatcher = NotificationDispatcher(store, deliver=overrides.get("deliver"))
    trigger = DocumentTrigger(
        store, ledger,
        renderer=overrides.get("renderer"),
        storage=overrides.get("storage"),
        clock=clock,
    )
    bus.subscribe(dispatcher.handle_milestone, name="notifications")
    bus.subscribe(trigger.handle_milestone, name="custody_documents")

    service = CollectionService(store, orchestrator, ledger, bus=bus, clock=clock)
    return {
        "store": store,
        "bus": bus,
        "ledger": ledger,
        "orchestrator": orchestrator,
        "dispatcher": dispatcher,
        "document_trigger": trigger,
        "collection_service": service,
    }


def wire_routes(services: Dict[str, Any]):
    """Hand the services to the routers."""
    store = services["store"]
    service = services["collection_service"]
    set_bookings_deps(store, service, services["orchestrator"])
    set_jobs_deps(store, service, services["orchestrator"])
    set_workflow_deps(store, service, services["bus"])


# ==================== LIFESPAN ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global db, mongo_client

    logger.info("Starting ITAD Collection Hub...")

    mongo_client = AsyncIOMotorClient(MONGO_URL)
    db = mongo_client[DB_NAME]

    store = MongoWorkflowStore(db)
    await store.create_indexes()

    services = build_services(store)
    wire_routes(services)
    app.state.services = services

    logger.info("ITAD Collection Hub started successfully")

    yield

    logger.info("Shutting down ITAD Collection Hub...")
    if mongo_client:
        mongo_client.close()


# ==================== APP SETUP ====================
app = FastAPI(
    title="ITAD Collection Hub",
    description="Booking and job workflow for IT asset collections",
    version=__version__,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# API Router with /api prefix
api_router = APIRouter(prefix="/api")
api_router.include_router(bookings_router)
api_router.include_router(jobs_router)
api_router.include_router(workflow_router)


@api_router.get("/health")
async def health():
    """Health check endpoint for Docker/Kubernetes probes."""
    return {"status": "healthy", "service": "itad-collection-hub"}


app.include_router(api_router)


@app.get("/")
async def root():
    return {
        "service": "ITAD Collection Hub",
        "version": __version__,
        "status": "running"
    }

"""PitchDesk - FastAPI Application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pitchdesk.agents.scheduler import start_scheduler, stop_scheduler
from pitchdesk.api.routes import router
from pitchdesk.core.config import get_settings
from pitchdesk.core.database import close_db, db_enabled, get_session_factory, init_db
from pitchdesk.core.errors import WorkflowError
from pitchdesk.services.store import MemoryStore
from pitchdesk.services.workflow import get_workflow, init_workflow

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: pick the store, then wire the workflow around it
    db_ready = await init_db()
    if db_ready:
        from pitchdesk.services.db_ops import SqlStore
        init_workflow(SqlStore(get_session_factory()))
    else:
        init_workflow(MemoryStore())

    if settings.expiry_sweep_enabled:
        start_scheduler(get_workflow)
    yield
    # Shutdown
    stop_scheduler()
    await close_db()


app = FastAPI(
    title="PitchDesk API",
    description=(
        "Transfer negotiation workflow between teams pitching players and agents.\n\n"
        "**Endpoints**:\n"
        "- `/api/v1/pitches` - Transfer pitches, views and withdrawal\n"
        "- `/api/v1/pitches/{id}/interest` - Agent interest ledger\n"
        "- `/api/v1/contracts` - Contract lifecycle, workflow steps and contract messages\n"
        "- `/api/v1/messages` - Conversations between parties\n"
        "- `/api/v1/notifications` - In-app notifications\n"
        "- `/api/v1/export` - CSV/Excel export\n"
    ),
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Pitches", "description": "Players offered for transfer or loan"},
        {"name": "Interest", "description": "Agent interest (interested, requested, negotiating, withdrawn, rejected)"},
        {"name": "Shortlist", "description": "Agent shortlists"},
        {"name": "Contracts", "description": "Contract lifecycle (draft → completed)"},
        {"name": "Messages", "description": "Messages between agents and teams"},
        {"name": "Notifications", "description": "Notification inbox"},
        {"name": "Maintenance", "description": "Pitch expiry sweep"},
        {"name": "Export", "description": "CSV and Excel export of contracts"},
    ],
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Tighten in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})


app.include_router(router, prefix="/api/v1")


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "store": type(get_workflow().store).__name__,
        "db_connected": db_enabled() and get_session_factory() is not None,
    }

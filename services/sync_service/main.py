"""Sync Service - FastAPI application."""

import logging
import sys
from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from services.chat_extractor.dom import ActiveDocumentSlot, RenderedDocument
from services.chat_extractor.registry import AdapterRegistry, build_default_registry
from services.notion_writer.dispatch_queue import DispatchQueue
from services.notion_writer.writer import NotionWriter
from services.sync_service.checkpoints import SyncStateStore
from services.sync_service.notifications import NotificationService
from services.sync_service.orchestrator import SyncLock, SyncOrchestrator
from services.sync_service.scheduler import SyncScheduler
from shared.clock import Clock
from shared.config import get_env, get_http_timeout, get_notion_config, get_sync_config
from shared.db_operations import DatabaseOperations
from shared.encryption import CredentialVault, EncryptionService
from shared.errors import AuthError, SyncError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

NOTION_TOKEN_SECRET = "notion_api_token"

# Global instances
db_ops: Optional[DatabaseOperations] = None
state: Optional[SyncStateStore] = None
http_client: Optional[httpx.AsyncClient] = None
registry: Optional[AdapterRegistry] = None
document_slot = ActiveDocumentSlot()
dispatch_queue: Optional[DispatchQueue] = None
orchestrator: Optional[SyncOrchestrator] = None
scheduler: Optional[SyncScheduler] = None
vault: Optional[CredentialVault] = None
clock = Clock()


def _load_notion_token() -> Optional[str]:
    """Notion token from the environment, else from the encrypted vault."""
    token = get_notion_config()["api_token"]
    if token:
        return token
    return vault.load(NOTION_TOKEN_SECRET) if vault else None


def _configure_sync(token: Optional[str]) -> bool:
    """
    Build the Notion writer, orchestrator and scheduler for a token.

    An existing orchestrator's lock is reused so a running cycle keeps
    blocking new ones. Returns False when Notion is not fully configured.
    """
    global orchestrator, scheduler

    sync_config = get_sync_config()
    notion_config = get_notion_config()
    if not (token and notion_config["database_id"]):
        logger.warning("Notion is not configured; sync endpoints are disabled")
        return False

    if scheduler:
        scheduler.stop()
        scheduler = None

    writer = NotionWriter(token, notion_config["database_id"], queue=dispatch_queue, clock=clock)
    lock = orchestrator.lock if orchestrator else SyncLock(state, clock)
    orchestrator = SyncOrchestrator(
        registry=registry,
        writer=writer,
        state=state,
        lock=lock,
        clock=clock,
        notification_service=NotificationService(),
        max_items_per_cycle=sync_config["max_items_per_cycle"],
        sub_batch_size=sync_config["sub_batch_size"],
        listing_limit=sync_config["listing_limit"],
        max_listing_pages=sync_config["max_listing_pages"],
    )
    if sync_config["auto_sync_enabled"]:
        scheduler = SyncScheduler(orchestrator, sync_config["interval_minutes"])
        scheduler.start()
    logger.info(f"Sync configured for Notion database {writer.database_id}")
    return True


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global db_ops, state, http_client, registry, dispatch_queue, vault

    logger.info("Sync Service starting up...")
    sync_config = get_sync_config()
    notion_config = get_notion_config()

    db_ops = DatabaseOperations()
    db_ops.create_tables()
    state = SyncStateStore(db_ops)
    logger.info("Database connection initialized")

    http_client = httpx.AsyncClient(timeout=get_http_timeout(), follow_redirects=True)
    registry = build_default_registry(
        http_client,
        clock=clock,
        document_provider=document_slot,
        platforms=sync_config["platforms"],
    )

    dispatch_queue = DispatchQueue(
        requests_per_window=notion_config["requests_per_window"],
        window=notion_config["window_seconds"],
        stale_after=notion_config["stale_after"],
        clock=clock,
    )

    vault = CredentialVault(db_ops, EncryptionService())
    _configure_sync(_load_notion_token())

    yield

    # Cleanup
    if scheduler:
        scheduler.stop()
    await dispatch_queue.close()
    await http_client.aclose()
    logger.info("Sync Service shutting down...")


# Create FastAPI application
app = FastAPI(
    title="Sync Service",
    description="Incrementally syncs AI chat conversations into Notion",
    version="0.1.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling middleware
@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """Global error handling middleware."""
    try:
        response = await call_next(request)
        return response
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc)
            }
        )


def _require_orchestrator() -> SyncOrchestrator:
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync is not configured (NOTION_API_TOKEN and NOTION_DATABASE_ID)"
        )
    return orchestrator


def _require_adapter(platform: str):
    adapter = registry.get(platform) if registry else None
    if adapter is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown platform: {platform}"
        )
    return adapter


@app.get("/ping", status_code=status.HTTP_200_OK)
async def ping():
    """Liveness probe."""
    return {"healthy": True, "timestamp": clock.now()}


# Health check endpoint
@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    db_healthy = False
    try:
        db_healthy = db_ops.ping()
    except Exception as e:
        logger.error(f"Database health check failed: {e}")

    registry_report = await registry.ping() if registry else {"platforms": [], "failed_endpoints": {}}

    overall_status = "healthy" if (db_healthy and registry_report["platforms"]) else "degraded"

    return {
        "status": overall_status,
        "service": "sync_service",
        "version": "0.1.0",
        "dependencies": {
            "database": "up" if db_healthy else "down",
            "registry": "up" if registry_report["platforms"] else "down",
            "notion_writer": "configured" if orchestrator else "not_configured",
            "scheduler": "running" if (scheduler and scheduler.running) else "stopped",
        },
        "failed_endpoints": registry_report["failed_endpoints"],
    }


@app.get("/", status_code=status.HTTP_200_OK)
async def root():
    """Root endpoint."""
    return {
        "service": "Sync Service",
        "version": "0.1.0",
        "status": "running"
    }


# Request/Response models
class SyncTriggerRequest(BaseModel):
    """Request model for a manual sync."""
    platforms: Optional[List[str]] = None
    force: bool = False


class ActiveDocumentRequest(BaseModel):
    """Rendered page currently open in the user's browser."""
    url: str
    html: str
    title: Optional[str] = None


@app.post("/internal/sync/trigger", status_code=status.HTTP_200_OK)
async def trigger_sync(request: Optional[SyncTriggerRequest] = None):
    """
    Run one sync cycle now.

    Shares the lock with the scheduler; returns a ``skipped`` result when a
    cycle is already running.
    """
    sync = _require_orchestrator()
    request = request or SyncTriggerRequest()
    logger.info(f"Manual sync requested (platforms={request.platforms}, force={request.force})")

    try:
        result = await sync.run_cycle(trigger="manual", platforms=request.platforms, force=request.force)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return result.to_dict()


@app.get("/internal/sync/status", status_code=status.HTTP_200_OK)
async def get_sync_status():
    """Current stage, lock state, checkpoints and recent history."""
    sync = _require_orchestrator()
    report = sync.status()
    report["next_run"] = scheduler.next_run_time() if scheduler else None
    return report


@app.get("/internal/sync/failures", status_code=status.HTTP_200_OK)
async def get_failures(platform: Optional[str] = None):
    """Failure log, newest last."""
    failures = state.failures(platform)
    return {"failures": [f.to_dict() for f in failures], "count": len(failures)}


@app.post("/internal/sync/retry/{platform}/{thread_id}", status_code=status.HTTP_200_OK)
async def retry_thread(platform: str, thread_id: str, force: bool = True):
    """Export one thread again, typically one from the failure log."""
    sync = _require_orchestrator()
    _require_adapter(platform)
    return await sync.retry_item(platform, thread_id, force=force)


@app.post("/internal/sync/checkpoints/{platform}/reset", status_code=status.HTTP_200_OK)
async def reset_checkpoint(platform: str):
    """Forget a platform's checkpoint so the next cycle lists from the start."""
    _require_adapter(platform)
    state.reset_checkpoint(platform)
    return {"platform": platform, "reset": True}


class NotionCredentialRequest(BaseModel):
    """Notion integration token to store encrypted."""
    api_token: str


@app.put("/internal/credentials/notion", status_code=status.HTTP_200_OK)
async def store_notion_token(request: NotionCredentialRequest):
    """Store the Notion token in the vault and enable sync with it."""
    if not request.api_token.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="api_token must not be empty")
    if orchestrator and orchestrator.lock.locked:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A sync is in progress")

    vault.save(NOTION_TOKEN_SECRET, request.api_token.strip())
    logger.info("Stored Notion token")
    return {"stored": True, "configured": _configure_sync(request.api_token.strip())}


@app.post("/internal/credentials/rotate", status_code=status.HTTP_200_OK)
async def rotate_credentials():
    """Re-encrypt stored secrets under the newest ENCRYPTION_KEYS entry."""
    return {"rotated": vault.rotate_all([NOTION_TOKEN_SECRET])}


@app.get("/internal/sources", status_code=status.HTTP_200_OK)
async def list_sources():
    """Registered platforms and endpoint health."""
    report = await registry.ping()
    return {
        "platforms": report["platforms"],
        "failed_endpoints": report["failed_endpoints"],
        "active_document": document_slot().url if document_slot() else None,
    }


@app.get("/internal/sources/identify", status_code=status.HTTP_200_OK)
async def identify_locator(locator: str):
    """Resolve a URL to (platform, thread_id)."""
    match = registry.identify(locator)
    if not match:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Locator not recognized by any platform"
        )
    platform, thread_id = match
    return {"platform": platform, "thread_id": thread_id}


@app.get("/internal/sources/{platform}/threads", status_code=status.HTTP_200_OK)
async def list_threads(
    platform: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100)
):
    """One window of a platform's thread listing."""
    adapter = _require_adapter(platform)
    try:
        page = await adapter.list_items(offset, limit)
    except AuthError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except SyncError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return {
        "platform": platform,
        "offset": page.offset,
        "has_more": page.has_more,
        "total": page.total,
        "threads": [
            {
                "id": t.id,
                "title": t.title,
                "last_activity_time": t.last_activity_time,
                "url": t.url,
            }
            for t in page.items
        ],
    }


@app.get("/internal/sources/{platform}/collections", status_code=status.HTTP_200_OK)
async def list_collections(platform: str):
    """User-defined collections (spaces); empty for platforms without them."""
    adapter = _require_adapter(platform)
    collections = await adapter.list_collections()
    return {"platform": platform, "collections": [{"id": c.id, "name": c.name} for c in collections]}


@app.post("/internal/extract/active-document", status_code=status.HTTP_200_OK)
async def set_active_document(request: ActiveDocumentRequest):
    """Install the currently open rendered page for DOM fallback extraction."""
    document_slot.set(RenderedDocument(request.url, request.html, title=request.title))
    match = registry.identify(request.url) if registry else None
    logger.info(f"Active document set: {request.url}")
    return {
        "url": request.url,
        "platform": match[0] if match else None,
        "thread_id": match[1] if match else None,
    }


if __name__ == "__main__":
    import uvicorn

    port = int(get_env("SYNC_SERVICE_PORT", "8005"))
    uvicorn.run(app, host="0.0.0.0", port=port)

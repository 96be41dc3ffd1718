import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .config import CONFIG_PATH, AppSettings, load_settings, save_settings
from .context import ContextDistiller
from .db import Database
from .events import EventStream, sse_format
from .llm import ChatClient
from .orchestrator import ChatRun, new_run_id
from .quota import QuotaLedger
from .schemas import ChatRequest, ContextBody, ContextUpdateRequest, DocumentCreate, UserUpsert
from .tavily import TavilyClient


logger = logging.getLogger("uvicorn.error")


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_llm_client(request: Request) -> ChatClient:
    return request.app.state.llm_client


def get_tavily_client(request: Request) -> TavilyClient:
    return request.app.state.tavily_client


def get_run_tasks(request: Request) -> Dict[str, asyncio.Task]:
    return request.app.state.run_tasks


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def get_quota(
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
) -> QuotaLedger:
    return QuotaLedger(
        db,
        weekly_limit=settings.free_weekly_premium_uses,
        monthly_limit=settings.premium_monthly_premium_uses,
    )


def get_distiller(
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    llm_client: ChatClient = Depends(get_llm_client),
) -> ContextDistiller:
    return ContextDistiller(db, llm_client, settings)


router = APIRouter()


@router.get("/health")
async def health():
    return {"ok": True}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    llm_client: ChatClient = Depends(get_llm_client),
    tavily_client: TavilyClient = Depends(get_tavily_client),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings body must be an object.")
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **body})
        new_settings.default_endpoint()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    llm_client.max_output_tokens = new_settings.max_output_tokens
    tavily_client.api_key = new_settings.tavily_api_key
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.post("/api/chat")
async def chat(
    payload: ChatRequest,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    llm_client: ChatClient = Depends(get_llm_client),
    tavily_client: TavilyClient = Depends(get_tavily_client),
    quota: QuotaLedger = Depends(get_quota),
    distiller: ContextDistiller = Depends(get_distiller),
    run_tasks: Dict[str, asyncio.Task] = Depends(get_run_tasks),
):
    run_id = new_run_id()
    events = EventStream(run_id)
    chat_run = ChatRun(
        payload,
        run_id=run_id,
        settings=settings,
        db=db,
        llm=llm_client,
        tavily=tavily_client,
        quota=quota,
        distiller=distiller,
        events=events,
    )

    async def run_and_cleanup() -> None:
        try:
            await chat_run.run()
        finally:
            run_tasks.pop(run_id, None)

    # The run outlives the response; a disconnected reader only stops draining events.
    run_tasks[run_id] = asyncio.create_task(run_and_cleanup())

    async def event_generator():
        try:
            async for event in events:
                yield sse_format(event)
        except asyncio.CancelledError:
            logger.info("Run %s client disconnected; run continues", run_id)
            raise

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Run-Id": run_id},
    )


@router.post("/api/context-update")
async def context_update(
    request: Request,
    distiller: ContextDistiller = Depends(get_distiller),
):
    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict) or not body.get("history") or not body.get("documentId"):
        raise HTTPException(status_code=400, detail="Missing required parameters")
    try:
        payload = ContextUpdateRequest(**body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Missing required parameters")
    try:
        update = await distiller.distill(payload.history, payload.document_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Document not found")
    except Exception as exc:
        logger.warning("Context update for document %s failed: %s", payload.document_id, exc)
        raise HTTPException(status_code=500, detail="Failed to update context")
    return update.to_wire()


@router.post("/api/documents")
async def create_document(payload: DocumentCreate, db: Database = Depends(get_db)):
    if payload.id and await db.get_document(payload.id):
        raise HTTPException(status_code=409, detail="Document already exists")
    return await db.create_document(
        document_id=payload.id,
        user_id=payload.user_id,
        title=payload.title,
        content=payload.content,
        context=payload.context,
    )


@router.get("/api/documents/{document_id}")
async def get_document(document_id: str, db: Database = Depends(get_db)):
    document = await db.get_document(document_id)
    if not document:
        raise HTTPException(status_code=404, detail="Document not found")
    return document


@router.get("/api/documents/{document_id}/context")
async def get_document_context(document_id: str, db: Database = Depends(get_db)):
    if not await db.get_document(document_id):
        raise HTTPException(status_code=404, detail="Document not found")
    return {"documentId": document_id, "context": await db.fetch_document_context(document_id)}


@router.post("/api/documents/{document_id}/context")
async def set_document_context(document_id: str, payload: ContextBody, db: Database = Depends(get_db)):
    if not await db.update_document_context(document_id, payload.context):
        raise HTTPException(status_code=404, detail="Document not found")
    return {"documentId": document_id, "context": payload.context}


@router.post("/api/users")
async def upsert_user(payload: UserUpsert, db: Database = Depends(get_db)):
    if not payload.id.strip():
        raise HTTPException(status_code=400, detail="User id is required.")
    return await db.upsert_user(payload.id, payload.subscription_status, payload.period_end)


@router.get("/api/users/{user_id}/usage")
async def get_usage(user_id: str, quota: QuotaLedger = Depends(get_quota)):
    stats = await quota.usage_stats(user_id)
    if stats is None:
        raise HTTPException(status_code=404, detail="User not found")
    return stats.to_wire()


@router.get("/api/runs/{run_id}")
async def get_run(run_id: str, db: Database = Depends(get_db)):
    run = await db.get_run_summary(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    llm_client: Optional[ChatClient] = None,
    tavily_client: Optional[TavilyClient] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        try:
            yield
        finally:
            pending = list(app.state.run_tasks.values())
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            await app.state.llm_client.close()
            await app.state.tavily_client.close()

    app = FastAPI(title="Docpilot Editing Orchestrator", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.llm_client = llm_client or ChatClient(max_output_tokens=settings.max_output_tokens)
    app.state.tavily_client = tavily_client or TavilyClient(settings.tavily_api_key)
    app.state.run_tasks = {}
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("DOCPILOT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "docpilot.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass

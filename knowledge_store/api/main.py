"""
FastAPI surface over the knowledge base.
"""

from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Awaitable, Callable, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .schemas import (
    AccountUpsertRequest,
    ChannelUpsertRequest,
    DocumentHit,
    DocumentRequest,
    DocumentResponse,
    DocumentSearchResponse,
    HealthResponse,
    IdResponse,
    MessageHit,
    MessageListResponse,
    MessageRequest,
    MessageResponse,
    MessageSearchResponse,
    SearchRequest,
)
from ..core.config import SEARCH_DEFAULT_K, VERSION, debug_enabled, validate_config
from ..core.errors import CodecError, ConstraintViolation, ProviderError, StoreError
from ..core.knowledge_base import KnowledgeBase
from ..util.logging import logger


def get_kb(request: Request) -> KnowledgeBase:
    return request.app.state.kb


def _error(status_code: int):
    async def handler(request: Request, exc: Exception):
        message = f"{request.method} {request.url.path} failed: {exc.__class__.__name__}: {exc}"
        if status_code >= 500:
            logger.error(message)
        else:
            logger.warning(message)
        return JSONResponse(status_code=status_code, content={"detail": str(exc), "error_type": exc.__class__.__name__})
    return handler


def create_app(kb_factory: Optional[Callable[[], Awaitable[KnowledgeBase]]] = None) -> FastAPI:
    """Build the application; kb_factory defaults to opening the configured database."""
    factory = kb_factory or KnowledgeBase.open

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for issue in validate_config():
            logger.warning(f"Configuration issue: {issue}")
        app.state.kb = await factory()
        try:
            yield
        finally:
            await app.state.kb.close()

    app = FastAPI(
        title="Knowledge Store API",
        version=VERSION,
        description="Relational records with SQLite-resident semantic search",
        docs_url="/docs" if debug_enabled() else None,
        redoc_url="/redoc" if debug_enabled() else None,
        lifespan=lifespan,
    )

    app.add_exception_handler(ConstraintViolation, _error(409))
    app.add_exception_handler(ProviderError, _error(502))
    app.add_exception_handler(CodecError, _error(500))
    app.add_exception_handler(StoreError, _error(500))

    @app.get("/health", response_model=HealthResponse)
    async def health_endpoint(kb: KnowledgeBase = Depends(get_kb)):
        db_health = await kb.health()
        return HealthResponse(
            status="healthy" if db_health else "unhealthy",
            version=VERSION,
            db_health=db_health,
            documents=await kb.count("documents"),
            messages=await kb.count("messages"),
        )

    @app.post("/accounts", response_model=IdResponse)
    async def upsert_account_endpoint(req: AccountUpsertRequest, kb: KnowledgeBase = Depends(get_kb)):
        return IdResponse(id=await kb.records.upsert_account(req.name, req.source, req.external_id))

    @app.post("/channels", response_model=IdResponse)
    async def upsert_channel_endpoint(req: ChannelUpsertRequest, kb: KnowledgeBase = Depends(get_kb)):
        return IdResponse(id=await kb.records.upsert_channel(req.external_id, req.kind, req.name))

    @app.post("/messages", response_model=IdResponse)
    async def add_message_endpoint(req: MessageRequest, kb: KnowledgeBase = Depends(get_kb)):
        message_id = await kb.add_message(req.channel_id, req.account_id, req.role, req.content, req.reply_to_id)
        return IdResponse(id=message_id)

    @app.get("/channels/{channel_id}/messages", response_model=MessageListResponse)
    async def recent_messages_endpoint(channel_id: int, limit: int = 20, kb: KnowledgeBase = Depends(get_kb)):
        messages = await kb.records.list_recent_messages(channel_id, limit)
        return MessageListResponse(messages=[MessageResponse(**asdict(m)) for m in messages])

    @app.put("/documents/{doc_id}", response_model=IdResponse)
    async def put_document_endpoint(doc_id: str, req: DocumentRequest, kb: KnowledgeBase = Depends(get_kb)):
        return IdResponse(id=await kb.add_document(doc_id, req.content))

    @app.get("/documents/{doc_id}", response_model=DocumentResponse)
    async def get_document_endpoint(doc_id: str, kb: KnowledgeBase = Depends(get_kb)):
        document = await kb.get_document(doc_id)
        if document is None:
            raise HTTPException(status_code=404, detail="Document not found")
        return DocumentResponse(doc_id=document.doc_id, content=document.content)

    @app.delete("/documents/{doc_id}")
    async def delete_document_endpoint(doc_id: str, kb: KnowledgeBase = Depends(get_kb)):
        if not await kb.delete_document(doc_id):
            raise HTTPException(status_code=404, detail="Document not found")
        return {"success": True, "doc_id": doc_id}

    @app.post("/search/documents", response_model=DocumentSearchResponse)
    async def search_documents_endpoint(req: SearchRequest, kb: KnowledgeBase = Depends(get_kb)):
        hits = await kb.search_documents(req.query, req.k or SEARCH_DEFAULT_K)
        return DocumentSearchResponse(
            results=[DocumentHit(distance=h.distance, doc_id=h.id, content=h.record.content) for h in hits]
        )

    @app.post("/search/messages", response_model=MessageSearchResponse)
    async def search_messages_endpoint(req: SearchRequest, kb: KnowledgeBase = Depends(get_kb)):
        hits = await kb.search_messages(req.query, req.k or SEARCH_DEFAULT_K)
        return MessageSearchResponse(
            results=[MessageHit(distance=h.distance, message=MessageResponse(**asdict(h.record))) for h in hits]
        )

    return app


app = create_app()

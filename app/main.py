"""
Learner Chat — Main Application
FastAPI app. Mounts routers and CORS. The lifespan owns the realtime registry
and the conversation pipeline: created on startup, drained and closed on shutdown.
"""

import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session as DBSession

from app.config import CORS_ORIGINS, LOG_LEVEL
from app.database import get_db, init_db, SessionLocal
from app.errors import PersistenceError
from app.realtime import ConnectionRegistry
from app.routers import public, realtime
from app.tutor.llm import LLMProvider, get_llm
from app.tutor.pipeline import ConversationPipeline

logger = logging.getLogger("learner")

VERSION = "1.0.0"


def create_app(
    session_factory: Optional[Callable[[], DBSession]] = None,
    llm: Optional[LLMProvider] = None,
) -> FastAPI:
    """
    Build the app. Passing a session_factory skips init_db(): the caller owns
    that database and request handlers get sessions from it.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=getattr(logging, LOG_LEVEL),
            format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        )

        if session_factory is None:
            logger.info("Initializing database...")
            init_db()

        registry = ConnectionRegistry()
        app.state.registry = registry
        app.state.pipeline = ConversationPipeline(
            session_factory=session_factory or SessionLocal,
            llm=llm or get_llm(),
            registry=registry,
        )
        logger.info(f"Learner Chat v{VERSION} ready")
        yield

        logger.info("Shutting down")
        await app.state.pipeline.drain()
        await registry.close_all()

    app = FastAPI(
        title="Learner Chat",
        description="Conversational learning backend: a child teaches an AI learner",
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        detail = f"Invalid {field}: {first.get('msg', 'bad input')}" if field else "Invalid request"
        return JSONResponse(status_code=400, content={"detail": detail})

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError):
        logger.error(f"{request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"detail": "DB error"})

    if session_factory is not None:
        def _scoped_db():
            db = session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _scoped_db

    # Mount routers
    app.include_router(public.router)
    app.include_router(realtime.router)

    # Health check (both /health and /healthz for the platform probe)
    @app.get("/health")
    @app.get("/healthz")
    async def health():
        return {"status": "ok", "version": VERSION}

    # Keep-alive endpoint for uptime monitors
    @app.get("/ping")
    async def ping():
        return {"status": "awake"}

    return app


app = create_app()

import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from backend import KVStore, create_store
from constants import ANON_KEY
from errors import TransientIOError
from logging_config import get_logger, setup_logging
from routers.matchmaking import matchmaking_router
from routers.signaling import signaling_router

setup_logging(log_level=os.getenv("LOG_LEVEL", "INFO"), log_file=os.getenv("LOG_FILE"))
logger = get_logger(__name__)


def create_app(store: Optional[KVStore] = None, anon_key: Optional[str] = ANON_KEY) -> FastAPI:
    """Build the API. ``store`` is created from STORE_BACKEND at startup when not given."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_store = app.state.store is None
        if owns_store:
            app.state.store = create_store()
            try:
                app.state.store.ping()
                logger.info("Store connected successfully")
            except TransientIOError:
                # /health reports it; requests fail with 500 until it comes back
                logger.error("Store is not reachable at startup")
        yield
        if owns_store:
            app.state.store.close()
            logger.info("Store connection closed")

    app = FastAPI(title="Stranger Match", lifespan=lifespan)
    app.state.store = store
    app.state.anon_key = anon_key

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())[1:]) or 'body'}: {err.get('msg')}"
            for err in exc.errors()
        )
        logger.warning(f"Malformed request to {request.url.path}: {problems}")
        return JSONResponse({"error": f"Invalid request: {problems}"}, status_code=400)

    @app.get("/health")
    async def health(request: Request):
        try:
            request.app.state.store.ping()
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return JSONResponse({"error": "Store unavailable"}, status_code=500)
        return {"status": "ok"}

    app.include_router(matchmaking_router)
    app.include_router(signaling_router)

    logger.info("FastAPI application initialized")
    return app


app = create_app()

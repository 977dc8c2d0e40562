import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ai.config import AISettings
from ai.routers import router as ai_router
from api.admin_content_routers import router as admin_content_router
from api.admin_routers import router as admin_router
from api.exam_routers import router as exam_router
from api.payment_routers import router as payment_router
from api.routers import router as api_router
from core.config import AppSettings
from core.db import Database
from core.errors import AppError
from core.rate_limit import RateLimitMiddleware

logger = logging.getLogger(__name__)


def _load_env() -> None:
    # project root .env (server/ 의 상위 폴더)
    env_path = Path(__file__).resolve().parent.parent / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path)


def create_app(
    settings: Optional[AppSettings] = None,
    database: Optional[Database] = None,
    ai_settings: Optional[AISettings] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Settings and the storage handle are built here (or injected by tests) and
    kept on ``app.state``; the database is opened in the lifespan.
    """
    _load_env()
    settings = settings or AppSettings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    database = database or Database(settings.database_url)
    ai_settings = ai_settings or AISettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.db.open()
        logger.info(f"[Main] ✅ O'Prep API started (AI {'enabled' if ai_settings.configured else 'disabled'})")
        yield
        app.state.db.close()

    app = FastAPI(title="O'Prep API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = database
    app.state.ai_settings = ai_settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(
        RateLimitMiddleware,
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )

    @app.exception_handler(AppError)
    async def _app_error(request: Request, exc: AppError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"[Main] ❌ unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "internal", "detail": "Internal server error"},
        )

    app.include_router(api_router, prefix="/api")
    app.include_router(exam_router, prefix="/api")
    app.include_router(payment_router, prefix="/api")
    app.include_router(admin_router, prefix="/api")
    app.include_router(admin_content_router, prefix="/api")
    app.include_router(ai_router, prefix="/ai")

    @app.get("/")
    def root():
        return {
            "message": "O'Prep API",
            "version": "0.1.0",
            "docs": "/docs",
            "health": "/api/health",
        }

    return app


app = create_app()

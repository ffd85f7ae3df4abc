from contextlib import asynccontextmanager
from typing import Optional
import os
import pathlib

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from notechat.application.container import NotechatServices
from notechat.domain.errors import NotFoundError, ValidationError
from notechat.infrastructure.config.settings import load_settings_store
from notechat.infrastructure.observability.logging import setup_logging
from .route import conversations, prompts
from .schema.requests import HealthResponse

logger = structlog.get_logger(__name__)


def create_app(services: NotechatServices) -> FastAPI:
    """Build the HTTP surface around an already wired service container"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.start()
        logger.info("API server started")
        yield
        await services.stop()
        logger.info("API server shutdown")

    app = FastAPI(title="notechat", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(
            status="ok" if services.started else "starting",
            prompts=len(services.prompt_cache.prompts),
            conversations=len(services.conversations),
            metrics=services.metrics.get_metrics_summary(),
        )

    app.include_router(conversations.router)
    app.include_router(prompts.router)
    return app


def build_default_app(settings_path: Optional[str] = None) -> FastAPI:
    """App backed by a vault directory on disk and a LangChain chat model"""

    from langchain.chat_models import init_chat_model

    from notechat.infrastructure.llm.langchain_client import LangChainModelClient
    from notechat.infrastructure.storage.local_file_store import LocalFileStore

    settings_store = load_settings_store(pathlib.Path(settings_path) if settings_path else None)
    settings = settings_store.get()
    setup_logging(settings.log_level, settings.log_format)

    vault = pathlib.Path(os.environ.get("NOTECHAT_VAULT", "."))
    chat_model = init_chat_model(settings.model)

    services = NotechatServices(
        file_store=LocalFileStore(vault),
        model_client=LangChainModelClient(chat_model),
        settings_store=settings_store,
    )
    logger.info("Serving vault", vault=str(vault.resolve()), model=settings.model)
    return create_app(services)


def main() -> None:
    app = build_default_app(os.environ.get("NOTECHAT_SETTINGS"))
    uvicorn.run(
        app,
        host=os.environ.get("NOTECHAT_HOST", "127.0.0.1"),
        port=int(os.environ.get("NOTECHAT_PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    main()

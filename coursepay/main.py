import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI

from coursepay.config import Settings, load_settings
from coursepay.database import init_db, make_engine, make_session_factory
from coursepay.errors import register_error_handlers
from coursepay.gateways import PaymentGateway, build_gateways
from coursepay.logging_config import RequestLoggingMiddleware, setup_logging
from coursepay.reconciliation import AccessHook
from coursepay.routes import router
from coursepay.webhooks import router as webhook_router

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    gateways: Optional[Dict[str, PaymentGateway]] = None,
    access_hook: Optional[AccessHook] = None,
) -> FastAPI:
    """Application factory; run with `uvicorn coursepay.main:create_app --factory`."""
    if settings is None:
        settings = load_settings()
        setup_logging(settings.log_level, settings.log_format)

    engine = make_engine(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(engine)
        logger.info(f"Course payment service started with gateways: {', '.join(app.state.gateways)}")
        yield
        engine.dispose()

    app = FastAPI(title="Course Payment Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.db_engine = engine
    app.state.session_factory = make_session_factory(engine)
    app.state.gateways = gateways if gateways is not None else build_gateways(settings)
    app.state.access_hook = access_hook

    app.add_middleware(RequestLoggingMiddleware)
    register_error_handlers(app)
    app.include_router(router)
    app.include_router(webhook_router)

    @app.get("/health")
    def health():
        return {"status": "healthy", "service": "coursepay"}

    return app

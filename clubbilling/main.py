import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clubbilling.api import billing, health, memberships, webhooks
from clubbilling.core.config import settings
from clubbilling.core.errors import BillingError
from clubbilling.db.session import SessionLocal
from clubbilling.scheduler import start_scheduler, stop_scheduler
from clubbilling.services.container import Services, build_services
from clubbilling.utils.redis_pool import close_redis

log = logging.getLogger("clubbilling")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)


async def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        log.error("request.failed path=%s code=%s msg=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_detail())


def create_app(services: Services | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings, SessionLocal)
        start_scheduler(app.state.services)
        try:
            yield
        finally:
            stop_scheduler()
            await app.state.services.analytics.drain()
            await close_redis()

    app = FastAPI(title="clubbilling", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(BillingError, billing_error_handler)

    app.include_router(health.router)
    app.include_router(memberships.router)
    app.include_router(billing.router)
    app.include_router(webhooks.router)
    return app


app = create_app()

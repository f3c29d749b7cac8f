from contextlib import asynccontextmanager

import redis.asyncio as redis
from fastapi import FastAPI

from isp_support.config import settings
from isp_support.database import Base, SessionLocal, engine
from isp_support.logging_config import get_logger, setup_logging
from isp_support.routers import billing, tickets, webhook
from isp_support.runtime import build_runtime
from isp_support.services.alert_service import alert_critical
from isp_support.services.errors import StoreError
from isp_support.services.whatsapp_service import WhatsAppGateway

setup_logging(settings.log_level)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    owned = getattr(app.state, "runtime", None) is None
    if owned:
        Base.metadata.create_all(bind=engine)
        redis_client = redis.from_url(settings.redis_url, decode_responses=True)
        transport = WhatsAppGateway(settings.gateway_url, settings.gateway_token)
        app.state.runtime = build_runtime(settings, redis_client, SessionLocal, transport)

    runtime = app.state.runtime
    try:
        recovered = await runtime.lifecycle.recover()
    except StoreError as e:
        await alert_critical("Recuperación de sesiones falló al iniciar", {"error": str(e)})
        raise
    logger.info(
        "Routing engine started",
        extra={"context": {"recovered_sessions": recovered, "pool": runtime.pool.snapshot()}},
    )
    try:
        yield
    finally:
        runtime.lifecycle.shutdown()
        if owned:
            await runtime.redis_client.aclose()
            app.state.runtime = None
        logger.info("Routing engine stopped")


app = FastAPI(
    title="ISP Support Router",
    description="WhatsApp support routing engine for an internet service provider",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(webhook.router)
app.include_router(tickets.router)
app.include_router(billing.router)


@app.get("/health")
async def health():
    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        return {"status": "starting"}
    return {"status": "ok", "pool": runtime.pool.snapshot()}

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from app.cabinet.dependencies import get_stripe_gateway
from app.cabinet.routes import referrals, stripe_webhook, subscriptions, tokens
from app.config import settings
from app.database.database import AsyncSessionLocal, engine
from app.logging_config import configure_logging
from app.services.subscription_service import process_due_renewals


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info('Starting billing API', environment=settings.ENVIRONMENT, stripe_mode=settings.get_stripe_mode())
    yield
    await engine.dispose()
    logger.info('Billing API stopped')


def create_app() -> FastAPI:
    configure_logging()
    application = FastAPI(title='Billing API', lifespan=lifespan)
    for module in (tokens, subscriptions, referrals, stripe_webhook):
        application.include_router(module.router)

    @application.get('/health', tags=['Health'])
    async def health():
        return {'status': 'ok'}

    return application


async def run_renewal_sweep() -> dict:
    """One pass of renewals and expiries; meant to be triggered by an external scheduler."""
    gateway = get_stripe_gateway() if settings.is_stripe_configured() else None
    async with AsyncSessionLocal() as db:
        result = await process_due_renewals(db, gateway=gateway)
    await engine.dispose()
    return result.data


def renewal_sweep_cli() -> None:
    configure_logging()
    asyncio.run(run_renewal_sweep())


app = create_app()

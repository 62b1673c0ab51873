"""Payment Result Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel

from checkout_common.config import Settings
from checkout_common.database import Database
from checkout_common.exceptions import PlatformApiError
from checkout_common.message_broker import MessageBroker

from .api_client import PlatformApiClient
from .messages import OutcomeMessage, outcome_message
from .reconciler import PaymentOutcomeResolver
from .redirect_params import parse_redirect_params
from .schemas import ResolutionContext, ResolvedOutcome
from .status_poller import PendingStatusPoller

# Settings
settings = Settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Database and message broker
database = Database(settings.database_url)
message_broker: Optional[MessageBroker] = (
    MessageBroker(settings.rabbitmq_url) if settings.publish_events else None
)

http_client: Optional[httpx.AsyncClient] = None
api_client: Optional[PlatformApiClient] = None
resolver: Optional[PaymentOutcomeResolver] = None
poller: Optional[PendingStatusPoller] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global http_client, api_client, resolver, poller

    # Startup
    logger.info("Starting Payment Result Service...")

    await database.create_tables()
    if message_broker:
        await message_broker.connect()

    http_client = httpx.AsyncClient(
        base_url=settings.platform_api_url,
        timeout=settings.platform_api_timeout,
    )
    api_client = PlatformApiClient(http_client, settings.platform_api_token)

    resolver = PaymentOutcomeResolver(
        gateway=api_client,
        purchases=api_client,
        catalog=api_client,
        success_redirect_seconds=settings.success_redirect_seconds,
    )
    poller = PendingStatusPoller(
        session_factory=database.session_factory,
        gateway=api_client,
        purchases=api_client,
        resolver=resolver,
        message_broker=message_broker,
        poll_interval=settings.poll_interval,
        check_timeout=settings.poll_check_timeout,
        checkout_redirect_delay=settings.checkout_redirect_delay,
    )
    await poller.start()

    logger.info("Payment Result Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Payment Result Service...")
    await poller.stop()
    await http_client.aclose()
    if message_broker:
        await message_broker.disconnect()
    await database.close()


app = FastAPI(title="Payment Result Service", lifespan=lifespan)


def get_resolver() -> PaymentOutcomeResolver:
    return resolver


def get_poller() -> PendingStatusPoller:
    return poller


async def get_current_user_id(authorization: Optional[str] = Header(None)) -> Optional[str]:
    """Identify the caller from their bearer token."""
    if not authorization or not authorization.lower().startswith("bearer "):
        return None

    token = authorization.split(" ", 1)[1]
    try:
        return await api_client.with_token(token).current_user_id()
    except PlatformApiError as e:
        raise HTTPException(status_code=502, detail=str(e))


# Request/Response models
class PaymentResultResponse(BaseModel):
    """Resolved outcome plus the message to present."""
    outcome: ResolvedOutcome
    message: OutcomeMessage


class PendingCheckResponse(BaseModel):
    """Watched transaction."""
    transaction_id: str
    page_request_id: Optional[str] = None
    last_known_status: str
    check_count: int
    last_error: Optional[str] = None

    class Config:
        from_attributes = True


# API Endpoints
@app.get("/payment-result", response_model=PaymentResultResponse)
async def get_payment_result(
    request: Request,
    x_pending_teacher_id: Optional[str] = Header(None),
    user_id: Optional[str] = Depends(get_current_user_id),
    outcome_resolver: PaymentOutcomeResolver = Depends(get_resolver),
    status_poller: PendingStatusPoller = Depends(get_poller),
):
    """Resolve the outcome of a gateway redirect from its query parameters."""
    params = parse_redirect_params(request.query_params)
    context = ResolutionContext(user_id=user_id, pending_teacher_id=x_pending_teacher_id)

    outcome = await outcome_resolver.resolve(params, context)

    if outcome.transaction_id and outcome.awaiting_confirmation:
        await status_poller.watch(
            outcome.transaction_id,
            page_request_id=outcome.page_request_id,
            user_id=user_id,
        )

    return PaymentResultResponse(
        outcome=outcome,
        message=outcome_message(outcome, signed_in=user_id is not None),
    )


@app.get("/pending-checks", response_model=List[PendingCheckResponse])
async def list_pending_checks(status_poller: PendingStatusPoller = Depends(get_poller)):
    """Transactions currently watched by the poller."""
    checks = await status_poller.list_watched()
    return [PendingCheckResponse.model_validate(check) for check in checks]


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": settings.service_name,
        "poller_running": bool(poller and poller.is_running),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import configure_logging, get_settings
from .database import engine
from .errors import register_exception_handlers
from .models import Base
from .routers import checkout, coupons, inventory, orders, payments, stripe_sessions

settings = get_settings()
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create database tables
    Base.metadata.create_all(bind=engine)
    if not settings.stripe_configured:
        logger.warning("STRIPE_SECRET_KEY is not set; Stripe endpoints will answer 500")
    if not settings.paypal_configured:
        logger.warning("PayPal credentials are not set; PayPal endpoints will answer 500")
    yield


app = FastAPI(
    title="Storefront Checkout Service",
    description="Orders, checkout, payments, coupons and stock reservations for the storefront",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(orders.router)
app.include_router(checkout.router)
app.include_router(coupons.router)
app.include_router(payments.router)
app.include_router(stripe_sessions.router)
app.include_router(inventory.router)


@app.get("/")
def root():
    return {
        "service": "Storefront Checkout Service",
        "status": "running",
        "version": "1.0.0"
    }


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "service": "storefront-checkout"
    }

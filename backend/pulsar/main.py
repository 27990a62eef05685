import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Configure structured JSON logging as early as possible so import-time
# warnings from the modules below are already formatted.
from pulsar.config import settings
from pulsar.logging_config import REQUEST_ID_HEADER, RequestIdMiddleware, configure_logging

configure_logging(level=settings.log_level)

from pulsar.api.discovery import router as discovery_router  # noqa: E402
from pulsar.api.generate import PAYMENT_HEADER, PAYMENT_RESPONSE_HEADER  # noqa: E402
from pulsar.api.generate import router as generate_router  # noqa: E402
from pulsar.api.status import router as status_router  # noqa: E402
from pulsar.api.worker import router as worker_router  # noqa: E402
from pulsar.deps import get_job_store  # noqa: E402

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up")
    store = app.dependency_overrides.get(get_job_store, get_job_store)()
    logger.info("Job store ready", extra={"job_store": type(store).__name__})
    if not settings.worker_secret:
        logger.warning("WORKER_SECRET is empty; worker endpoints will reject every request")
    yield
    logger.info("Application shutting down")


app = FastAPI(title="Pulsar Music Generation API", lifespan=lifespan)

# Request ID middleware must be added BEFORE CORS so every response carries
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestIdMiddleware, payment_header=PAYMENT_HEADER)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*", REQUEST_ID_HEADER, PAYMENT_HEADER],
    expose_headers=[REQUEST_ID_HEADER, PAYMENT_RESPONSE_HEADER],
)

app.include_router(generate_router)
app.include_router(status_router)
app.include_router(worker_router)
app.include_router(discovery_router)

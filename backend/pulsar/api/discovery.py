"""Service metadata endpoints.

Implements:
  GET /api/discovery — x402 discovery document for indexers
  GET /api/health    — liveness plus current queue depth
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from pulsar.config import settings
from pulsar.deps import JobStoreDep

router = APIRouter(prefix="/api", tags=["meta"])

SERVICE_NAME = "Pulsar"
SERVICE_VERSION = "1.0.0"


def build_discovery_document() -> dict:
    price = settings.price_display
    return {
        "version": "1.0",
        "metadata": {
            "name": SERVICE_NAME,
            "displayName": SERVICE_NAME,
            "description": (
                "Royalty-free instrumental music generation API. Generate unique tracks in "
                "any style: lo-fi, ambient, cinematic, chiptune, and more. "
                "Pay-per-generation with x402, no subscriptions."
            ),
            "category": "AI/Music",
            "tags": ["Music", "AI", "Audio", "Creative", "Agent"],
        },
        "resources": [
            {
                "url": "/api/generate",
                "method": "POST",
                "description": "Generate royalty-free instrumental music. Returns 2 unique tracks per request.",
                "price": price,
                "network": settings.payment_network,
                "input": {
                    "type": "json",
                    "fields": {
                        "title": {"type": "string", "required": True, "description": "Track title (used as creative seed)"},
                        "style": {"type": "string", "required": True, "description": "Musical style descriptors (e.g. 'lo-fi, jazzy, chill')"},
                    },
                },
            },
            {
                "url": "/api/status/:jobId",
                "method": "GET",
                "description": "Check generation status and get download URLs when complete.",
                "price": "Free",
            },
            {"url": "/api/health", "method": "GET", "description": "Health check endpoint.", "price": "Free"},
        ],
        "payment": {
            "network": settings.payment_network,
            "asset": "USDC",
            "assetAddress": settings.asset_address,
            "payTo": settings.pay_to,
            "protocol": "x402",
        },
    }


@router.get("/discovery")
def discovery() -> JSONResponse:
    return JSONResponse(
        build_discovery_document(),
        headers={
            "Access-Control-Allow-Origin": "*",
            "Cache-Control": "public, max-age=3600",
        },
    )


@router.get("/health")
async def health(store: JobStoreDep):
    queue_length = await run_in_threadpool(store.queue_length)
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "operational",
        "queue": {
            "length": queue_length,
            "estimatedWaitSeconds": queue_length * settings.estimated_generation_seconds,
        },
        "pricing": {"generate": settings.price_display, "status": "free"},
    }

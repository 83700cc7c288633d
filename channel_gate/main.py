"""
Main FastAPI application for the channel access service.
Serves the YooKassa webhook, the checkout return page, admin API, health and metrics.
"""
from fastapi import FastAPI

from channel_gate.api.routes import admin, checkout, health, webhooks
from channel_gate.core.logging import configure_logging
from channel_gate.utils.metrics import router as metrics_router


configure_logging()

app = FastAPI(
    title="Channel Gate API",
    description="YooKassa payments to single-use invite links for a private Telegram channel",
    version="1.0.0",
)

# Routers
app.include_router(health.router, tags=["health"])
app.include_router(webhooks.router)
app.include_router(checkout.router)
app.include_router(admin.router)
app.include_router(metrics_router)

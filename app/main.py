from fastapi import FastAPI

from app.config import settings
from app.logging_config import setup_logging
from app.routers import internal, webhook, workflows
from app.services.background_tasks import drain

setup_logging(settings.log_level, json_output=settings.log_json)

app = FastAPI(
    title="ReplyDesk API",
    description="LINE customer-service reply pipeline",
    version="0.1.0",
)

app.include_router(webhook.router)
app.include_router(workflows.router)
app.include_router(internal.router)


@app.on_event("shutdown")
async def drain_background_tasks() -> None:
    await drain()


@app.get("/health")
async def health():
    return {"status": "ok"}

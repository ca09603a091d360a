import logging

from fastapi import FastAPI

from stepwright.routes import api
from stepwright.routes import artifacts
from stepwright.routes import config as config_api

logging.getLogger("stepwright").setLevel(logging.INFO)

app = FastAPI(title="Stepwright Test Runner")
app.include_router(api.router)
app.include_router(config_api.router)
app.include_router(artifacts.router)


@app.get("/healthz")
async def healthz() -> dict:
    """Liveness check."""
    return {"status": "ok"}

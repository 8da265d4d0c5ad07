from contextlib import asynccontextmanager

from fastapi import FastAPI

from adsync.jobs import get_orchestrator
from adsync.sync_api import sync_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    orchestrator = get_orchestrator()
    # Circuits opened by a previous process stay open until their cool-down ends.
    await orchestrator.restore_circuits()
    yield
    await orchestrator.persist_circuits()
    await orchestrator.close()


app = FastAPI(title="adsync", version="0.1.0", lifespan=lifespan)
app.include_router(sync_router)

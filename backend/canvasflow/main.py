import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from canvasflow import config
from canvasflow.api.routes import api_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan: startup and shutdown events.
    """
    # Startup
    logging.basicConfig(
        level=config.log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting canvasflow (run ledger backend: %s)", config.run_ledger_backend())

    yield

    # Shutdown
    logger.info("Shutting down canvasflow")

app = FastAPI(
    title="canvasflow",
    description="Execution engine for canvas workflows: runs node graphs of prompts, LLM calls and media transforms, and records every run.",
    lifespan=lifespan
)

# Allow localhost and Vercel preview deployments
app.add_middleware(
    CORSMiddleware,
    allow_origins=[],
    allow_origin_regex=r"^https:\/\/.*\.vercel\.app$|^http:\/\/localhost:\d+$|^http:\/\/127\.0\.0\.1:\d+$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(api_router)

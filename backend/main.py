"""Travel planner backend — FastAPI application entry point."""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.ai.llm import AnthropicLLM, LLMClient
from backend.errors import PlannerError
from backend.middleware.rate_limit import RateLimitMiddleware
from backend.routes import auth, conversation, credits, jobs

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def wire_services(app: FastAPI, llm: Optional[LLMClient] = None, session_factory=None) -> None:
    """Build the planner's collaborators and attach them to ``app.state``."""
    from backend.ai.generators import MeteredModel, PlanGenerator
    from backend.conversation.orchestrator import PlannerEngine
    from backend.conversation.session_store import SQLiteSessionStore
    from backend.services.credits import CreditLedger
    from backend.services.itinerary_store import ItineraryStore
    from backend.services.jobs import JobExecutor
    from backend.services.memory import TravellerMemoryStore
    from backend.services.plan_applier import PlanApplier

    ledger = CreditLedger(session_factory)
    itinerary = ItineraryStore(session_factory)
    memory = TravellerMemoryStore(session_factory)
    metered = MeteredModel(llm or AnthropicLLM(), ledger)
    generator = PlanGenerator(metered, memory)
    applier = PlanApplier(itinerary)
    job_executor = JobExecutor(generator, applier, itinerary, session_factory)

    app.state.ledger = ledger
    app.state.itinerary = itinerary
    app.state.jobs = job_executor
    app.state.session_store = SQLiteSessionStore(session_factory)
    app.state.engine = PlannerEngine(
        store=app.state.session_store,
        ledger=ledger,
        metered=metered,
        generator=generator,
        applier=applier,
        itinerary=itinerary,
        jobs=job_executor,
        memory=memory,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    from backend.database import init_db
    init_db()
    if not hasattr(app.state, "engine"):
        wire_services(app)

    stop = asyncio.Event()
    worker: Optional[asyncio.Task] = None
    if os.getenv("PLAN_WORKER_ENABLED", "1") == "1":
        app.state.jobs.recover_interrupted()
        worker = asyncio.create_task(app.state.jobs.run_forever(stop))

    yield

    stop.set()
    if worker is not None:
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="Travel Planner API",
    description="AI-assisted trip planning: conversation, plan generation and background jobs",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(PlannerError)
async def planner_error_handler(request: Request, exc: PlannerError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, **exc.to_dict()})


# CORS: allow frontend origins
_frontend_url = os.getenv("FRONTEND_URL")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[_frontend_url] if _frontend_url else [],
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(
    RateLimitMiddleware,
    requests_per_minute=int(os.getenv("RATE_LIMIT_PER_MINUTE", "60")),
    ai_requests_per_minute=int(os.getenv("RATE_LIMIT_AI_PER_MINUTE", "10")),
    auth_requests_per_minute=int(os.getenv("RATE_LIMIT_AUTH_PER_MINUTE", "5")),
)

app.include_router(auth.router, prefix="/api", tags=["Auth"])
app.include_router(conversation.router, prefix="/api", tags=["Planner"])
app.include_router(jobs.router, prefix="/api", tags=["Jobs"])
app.include_router(credits.router, prefix="/api", tags=["Credits"])


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "travelplanner-backend"}

import uvicorn
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from buildrail.agents.dispatcher import Dispatcher
from buildrail.api.events import router as events_router
from buildrail.api.pipelines import router as pipelines_router
from buildrail.api.runs import router as runs_router
from buildrail.core.config import BUILDRAIL_CONFIG
from buildrail.core.errors import ConfigurationError
from buildrail.utils.logging_config import setup_logging

setup_logging(level=logging.INFO)
logger = logging.getLogger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "dispatcher", None) is None:
        try:
            app.state.dispatcher = Dispatcher.from_config_path(BUILDRAIL_CONFIG)
            logger.info(f"Loaded {len(app.state.dispatcher.config.pipelines)} pipeline(s) from {BUILDRAIL_CONFIG}")
        except ConfigurationError as e:
            logger.error(f"Pipeline configuration not loaded: {e.message}")
            for problem in e.problems:
                logger.error(f"  - {problem}")
    yield
    dispatcher = getattr(app.state, "dispatcher", None)
    if dispatcher is not None:
        await dispatcher.drain()


app = FastAPI(title="buildrail CI orchestration API", lifespan=lifespan)

# ---------------------------------------------------------------------------
# Logging Middleware
# ---------------------------------------------------------------------------
class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_host = request.client.host if request.client else "unknown"
        logger.info(f"Incoming: {request.method} {request.url.path} from {client_host}")

        try:
            response = await call_next(request)
            process_time = (time.time() - start_time) * 1000
            logger.info(
                f"Outgoing: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - "
                f"Time: {process_time:.2f}ms"
            )
            return response
        except Exception as e:
            logger.error(f"Request failed: {request.method} {request.url.path} - Error: {str(e)}")
            raise

app.add_middleware(LoggingMiddleware)


@app.get("/health")
async def health_check():
    dispatcher = getattr(app.state, "dispatcher", None)
    if dispatcher is None:
        return {"status": "ok", "config_loaded": False, "agents": [], "busy_agents": {}}
    pool = dispatcher.scheduler.agent_pool
    return {
        "status": "ok",
        "config_loaded": True,
        "agents": [agent.name for agent in pool.agents],
        "busy_agents": pool.busy(),
    }

app.include_router(events_router, tags=["Events"])
app.include_router(pipelines_router, tags=["Pipelines"])
app.include_router(runs_router, tags=["Runs"])

if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8111)

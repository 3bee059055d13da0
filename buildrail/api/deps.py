"""
Shared FastAPI dependencies.
"""
from fastapi import HTTPException, Request

from buildrail.agents.dispatcher import Dispatcher


def get_dispatcher(request: Request) -> Dispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Pipeline configuration not loaded")
    return dispatcher

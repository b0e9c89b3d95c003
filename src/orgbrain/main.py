"""OrgBrain FastAPI application assembly.

Wires the learning router and the background recorder lifespan.
Run: uvicorn orgbrain.main:app --reload
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from orgbrain.learning.recorder import learning_recorder
from orgbrain.learning.router import learning_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: start/stop the learning recorder worker.

    Audits and metrics submitted during a request are written by the worker;
    shutdown drains whatever is still queued.
    """
    learning_recorder.start()
    app.state.learning_recorder = learning_recorder

    yield

    await learning_recorder.stop()


app = FastAPI(title="OrgBrain", version="0.1.0", lifespan=lifespan)

app.include_router(learning_router)

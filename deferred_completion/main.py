from contextlib import asynccontextmanager

from fastapi import FastAPI

import uvicorn

from deferred_completion.config import settings
from deferred_completion.database import init_db
from deferred_completion.routers import completions


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Alembic owns the schema outside development
    if settings.app_env == "development":
        init_db()
    yield


app = FastAPI(title="Deferred Completions", lifespan=lifespan)

# Include routers
app.include_router(completions.router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy", "service": "deferred_completion"}


if __name__ == "__main__":
    uvicorn.run(
        "deferred_completion.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        loop="asyncio",  # Explicitly use asyncio instead of auto (which tries uvloop)
    )

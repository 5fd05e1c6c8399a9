from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from citewatch.api.routes import queue, runs, worker
from citewatch.config import settings
from citewatch.queue.work_queue import get_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = get_store()
    await store.initialize()
    app.state.store = store
    yield
    await store.close()


app = FastAPI(
    title="citewatch",
    description="AI citation tracking: query AI platforms, crawl and score cited pages",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(runs.router)
app.include_router(worker.router)
app.include_router(queue.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "citewatch"}

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from chatstream.core.config import settings
from chatstream.core.auth import RateLimitMiddleware
from chatstream.core.logging import setup_logging
from chatstream.infra.db import Base, engine
from chatstream.infra.sse import BroadcastHub
from chatstream.workers.loop import start_background_tasks, stop_background_tasks

setup_logging()

app = FastAPI(title=settings.APP_NAME)
app.state.hub = BroadcastHub(max_subscribers=settings.SSE_MAX_SUBSCRIBERS)
app.state.tasks = []

# Rate limiting middleware (per-IP, per-path)
app.add_middleware(RateLimitMiddleware, max_per_minute=settings.RATE_LIMIT_PER_MINUTE)

if settings.CORS_ALLOW_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.on_event("startup")
async def on_startup():
    Base.metadata.create_all(bind=engine)
    if settings.BACKGROUND_TASKS_ENABLED:
        app.state.tasks = start_background_tasks(app.state.hub)


@app.on_event("shutdown")
async def on_shutdown():
    await stop_background_tasks(app.state.tasks)
    app.state.tasks = []
    app.state.hub.close_all()


from chatstream.api.stream_routes import router as stream_router
from chatstream.api.messages_routes import router as messages_router
from chatstream.api.auth_routes import router as auth_router
from chatstream.api.admin_routes import router as admin_router

# stream first so /messages/stream is not captured by /messages/{message_id}
app.include_router(stream_router)
app.include_router(messages_router)
app.include_router(auth_router)
app.include_router(admin_router)


@app.get("/health")
def health():
    return {
        "status": "ok",
        "app": settings.APP_NAME,
        "subscribers": app.state.hub.size,
    }

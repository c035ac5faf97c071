from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.core.config import settings
from app.core.http_hardening import install_http_hardening
from app.api.router import router as api_router
from app.realtime.events import DomainEventBus
from app.realtime.gateway import SessionGateway
from app.realtime.ws import router as ws_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    gateway = SessionGateway(event_bus=app.state.event_bus)
    app.state.gateway = gateway
    await gateway.start()
    try:
        yield
    finally:
        await gateway.stop()


app = FastAPI(title=settings.APP_NAME, version="0.1.0", lifespan=lifespan)
app.state.event_bus = DomainEventBus()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
install_http_hardening(app)

app.include_router(api_router, prefix="/api")
app.include_router(ws_router)

@app.get("/", include_in_schema=False)
def landing():
    return JSONResponse({"service": settings.APP_NAME, "status": "ok"})

@app.get("/health")
def health():
    return {"status": "ok"}

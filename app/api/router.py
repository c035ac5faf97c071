from fastapi import APIRouter
from app.api import cases, chat, connections

router = APIRouter()
router.include_router(cases.router, prefix="/cases", tags=["Cases"])
router.include_router(connections.router, prefix="/connections", tags=["Connections"])
router.include_router(chat.router, prefix="/channels", tags=["Chat"])

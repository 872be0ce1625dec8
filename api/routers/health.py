from fastapi import APIRouter, Depends

from api.dependencies import get_services
from kb_chat.services import Services

router = APIRouter()


@router.get("")
async def health(services: Services = Depends(get_services)):
    redis_ok = await services.store.ping()
    body = {"status": "ok" if redis_ok else "degraded", "redis": redis_ok}

    if redis_ok:
        body["active_sessions"] = await services.chat_manager.get_session_count()
        body["api_counts"] = await services.api_tracker.get_api_counts()

    return body

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.dependencies import get_services
from kb_chat.logger import GLOBAL_LOGGER as log
from kb_chat.services import Services

router = APIRouter()

STATUS_BY_ERROR_TYPE = {
    "validation": 400,
    "not_found": 404,
    "processing": 500,
    "unexpected": 500,
}


class ChatRequest(BaseModel):
    message: Optional[str] = None
    token: Optional[str] = None


@router.post("/chat")
async def chat(req: ChatRequest, services: Services = Depends(get_services)):
    """
    One chat turn against the knowledge base identified by ``token``.
    The token doubles as the chat session id.
    """
    if not req.message or not req.token:
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "Both message and token are required"},
        )

    log.info("Chat request received | token=%s", req.token)
    result = await services.chat_manager.process_chat(req.message, req.token)

    if not result.success:
        return JSONResponse(
            status_code=STATUS_BY_ERROR_TYPE.get(result.error_type, 500),
            content={"success": False, "message": result.error},
        )

    return {"success": True, "message": result.message, "session_id": result.session_id}


@router.get("/chat/{token}/history")
async def get_history(token: str, services: Services = Depends(get_services)):
    history = await services.chat_manager.get_chat_history(token)
    if history is None:
        return JSONResponse(
            status_code=404,
            content={"success": False, "message": "Chat session not found"},
        )
    return {
        "success": True,
        "data": {
            "history": [m.model_dump(mode="json") for m in history],
            "count": len(history),
        },
    }


@router.delete("/chat/{token}/history")
async def clear_history(token: str, services: Services = Depends(get_services)):
    cleared = await services.chat_manager.clear_chat_history(token)
    if not cleared:
        return JSONResponse(
            status_code=404,
            content={"success": False, "message": "Chat session not found"},
        )
    return {"success": True, "message": "Chat history cleared"}

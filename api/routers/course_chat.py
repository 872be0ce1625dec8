from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field

from api.dependencies import get_services
from kb_chat.services import Services

router = APIRouter()


class CourseChatRequest(BaseModel):
    message: Optional[str] = None
    course_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("course_name", "courseName")
    )
    token: Optional[str] = None


@router.post("/course-chat")
async def course_chat(req: CourseChatRequest, services: Services = Depends(get_services)):
    if not req.message or not req.course_name:
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "Both message and course name are required"},
        )

    result = await services.course_chat.chat(req.message, req.course_name, req.token)

    if not result.success:
        status_code = {"validation": 400, "not_found": 404}.get(result.error_type, 500)
        return JSONResponse(
            status_code=status_code,
            content={"success": False, "message": result.error, "token": result.token},
        )

    return {"success": True, "message": result.message, "token": result.token}

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as SchemaError
from starlette.datastructures import UploadFile

from api.dependencies import get_services
from kb_chat.logger import GLOBAL_LOGGER as log
from kb_chat.services import Services
from kb_chat.src.knowledge_base.schemas import KnowledgeBaseInput
from kb_chat.utils.file_io import UploadedFile

router = APIRouter()

FORM_CONTENT_TYPES = ("multipart/form-data", "application/x-www-form-urlencoded")


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"success": False, "message": message, **extra}
    )


def _clean(value) -> Optional[str]:
    if value is None or not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


async def _read_fields(request: Request) -> dict:
    """Knowledge base fields from a multipart form or a JSON body."""
    content_type = request.headers.get("content-type", "")

    if content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        fields = dict(form)
        upload = form.get("file")
        if isinstance(upload, UploadFile):
            content = await upload.read()
            fields["file"] = (
                UploadedFile(
                    filename=upload.filename or "file",
                    content=content,
                    mimetype=upload.content_type or "application/octet-stream",
                )
                if content
                else None
            )
        else:
            fields["file"] = None
        return fields

    try:
        body = await request.json()
    except ValueError:
        return {}
    if not isinstance(body, dict):
        return {}
    # files only arrive through multipart
    body.pop("file", None)
    return body


@router.post("/knowledge-base")
async def create_knowledge_base(request: Request, services: Services = Depends(get_services)):
    fields = await _read_fields(request)

    try:
        data = KnowledgeBaseInput(
            text=_clean(fields.get("text")),
            file=fields.get("file"),
            link=_clean(fields.get("link")),
            video_url=_clean(fields.get("youtube_url") or fields.get("youtubeUrl")),
            crawl_depth=_clean(fields.get("crawl_depth") or fields.get("crawlDepth")),
        )
    except SchemaError:
        return _error(400, "crawl_depth must be 'single' or 'site'")

    result = await services.kb_manager.create(data)

    if not result.success:
        first = result.errors[0] if result.errors else None
        if first is not None and first.field == "server":
            return _error(500, "Internal server error")
        return _error(
            400,
            first.message if first else "Validation failed",
            errors=[e.model_dump() for e in result.errors],
        )

    return JSONResponse(
        status_code=201,
        content={
            "success": True,
            "message": "Knowledge base created successfully",
            "token": result.token,
        },
    )


@router.get("/knowledge-base")
async def list_knowledge_bases(services: Services = Depends(get_services)):
    tokens = await services.kb_manager.list_tokens()
    return {"success": True, "data": {"tokens": tokens, "count": len(tokens)}}


@router.get("/knowledge-base/{token}")
async def get_knowledge_base(token: str, services: Services = Depends(get_services)):
    record = await services.kb_manager.get(token)
    if record is None:
        return _error(404, "Knowledge base not found or expired")

    return {"success": True, "data": record.model_dump(mode="json", exclude_none=True)}


@router.delete("/knowledge-base/{token}")
async def delete_knowledge_base(token: str, services: Services = Depends(get_services)):
    deleted = await services.kb_manager.delete(token)
    if not deleted:
        return _error(404, "Knowledge base not found")

    log.info("Knowledge base deleted via API | token=%s", token)
    return {"success": True, "message": "Knowledge base deleted successfully"}

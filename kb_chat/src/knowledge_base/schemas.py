from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from kb_chat.utils.file_io import UploadedFile

SourceKind = Literal["text", "file", "link", "video"]

# fan-out order for ingestion, retrieval and synthesis
SOURCE_KINDS: List[str] = ["text", "file", "link", "video"]


class SourceInfo(BaseModel):
    collection_name: str
    document_count: int = 0
    chunk_count: int = 0


class TextSourceInfo(SourceInfo):
    pass


class FileSourceInfo(SourceInfo):
    filename: str
    size: int
    mimetype: str


class LinkSourceInfo(SourceInfo):
    url: str
    crawl_depth: Literal["single", "site"] = "site"
    pages: List[str] = Field(default_factory=list)


class VideoSourceInfo(SourceInfo):
    url: str
    video_id: str
    title: str = "Unknown Title"
    author: str = "Unknown Author"


class KnowledgeBaseRecord(BaseModel):
    token: str
    created_at: datetime
    expires_at: datetime
    text_source: Optional[TextSourceInfo] = None
    file_source: Optional[FileSourceInfo] = None
    link_source: Optional[LinkSourceInfo] = None
    video_source: Optional[VideoSourceInfo] = None

    def sources(self) -> Dict[str, SourceInfo]:
        """Present sources keyed by kind, in fan-out order."""
        out: Dict[str, SourceInfo] = {}
        for kind in SOURCE_KINDS:
            info = getattr(self, f"{kind}_source")
            if info is not None:
                out[kind] = info
        return out

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class KnowledgeBaseInput(BaseModel):
    text: Optional[str] = None
    file: Optional[UploadedFile] = None
    link: Optional[str] = None
    video_url: Optional[str] = None
    crawl_depth: Optional[Literal["single", "site"]] = None

    def present_kinds(self) -> List[str]:
        values = {
            "text": self.text,
            "file": self.file,
            "link": self.link,
            "video": self.video_url,
        }
        return [kind for kind in SOURCE_KINDS if values[kind]]


class FieldError(BaseModel):
    field: str
    message: str


class KnowledgeBaseResponse(BaseModel):
    success: bool
    token: Optional[str] = None
    errors: List[FieldError] = Field(default_factory=list)

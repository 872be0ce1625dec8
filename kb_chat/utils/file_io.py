from __future__ import annotations

import re
from pathlib import Path

from pydantic import BaseModel


class UploadedFile(BaseModel):
    """
    An uploaded file held in memory. The HTTP layer wraps FastAPI's
    UploadFile into this so ingestion never depends on the web framework.
    """

    filename: str
    content: bytes
    mimetype: str

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def extension(self) -> str:
        return Path(self.filename).suffix.lower()


def safe_filename(name: str) -> str:
    """Clean file name (only alphanum, dash, underscore) keeping the extension."""
    path = Path(name or "file")
    stem = re.sub(r"[^a-zA-Z0-9_\-]", "_", path.stem).lower() or "file"
    return f"{stem}{path.suffix.lower()}"

from datetime import datetime, timezone

from langchain_core.documents import Document

from kb_chat.exception.custom_exception import SourceProcessingError
from kb_chat.src.document_ingestion.base_loader import SourceLoader


class TextLoader(SourceLoader):
    """Pasted free text, indexed as a single document."""

    kind = "text"

    async def _load(self, raw, token, options):
        if not raw or not str(raw).strip():
            raise SourceProcessingError(self.kind, "No text content provided")

        document = Document(
            page_content=str(raw),
            metadata={
                "source": "user-text-input",
                "uploaded_at": datetime.now(timezone.utc).isoformat(),
                "type": "text",
            },
        )
        return [document], {"characters": len(raw)}

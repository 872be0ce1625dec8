from __future__ import annotations

import io
from typing import List

import fitz
import pandas as pd
from langchain_core.documents import Document

from kb_chat.exception.custom_exception import SourceProcessingError
from kb_chat.logger import GLOBAL_LOGGER as log
from kb_chat.src.document_ingestion.base_loader import SourceLoader
from kb_chat.utils.file_io import UploadedFile, safe_filename
from kb_chat.utils.thread_pool import run_sync

PDF_MIMETYPES = {"application/pdf"}
CSV_MIMETYPES = {"text/csv", "application/vnd.ms-excel"}

# rows per CSV document before chunking
CSV_ROWS_PER_DOCUMENT = 50


def extract_pdf_pages(content: bytes, source: str) -> List[Document]:
    """One Document per non-empty PDF page."""
    docs: List[Document] = []
    with fitz.open(stream=content, filetype="pdf") as pdf:
        total_pages = len(pdf)
        for i in range(total_pages):
            text = pdf[i].get_text("text") or ""
            if not text.strip():
                continue
            docs.append(
                Document(
                    page_content=text,
                    metadata={
                        "source": source,
                        "page": i + 1,
                        "total_pages": total_pages,
                        "type": "pdf",
                    },
                )
            )
    return docs


def extract_csv_rows(content: bytes, source: str) -> List[Document]:
    """Render the table as CSV text in blocks of rows, header repeated per block."""
    df = pd.read_csv(io.BytesIO(content))
    if df.empty:
        return []

    docs: List[Document] = []
    for start in range(0, len(df), CSV_ROWS_PER_DOCUMENT):
        block = df.iloc[start : start + CSV_ROWS_PER_DOCUMENT]
        docs.append(
            Document(
                page_content=block.to_csv(index=False),
                metadata={
                    "source": source,
                    "rows": f"{start + 1}-{start + len(block)}",
                    "columns": ", ".join(str(c) for c in df.columns),
                    "type": "csv",
                },
            )
        )
    return docs


class FileLoader(SourceLoader):
    """Uploaded PDF or CSV file."""

    kind = "file"

    async def _load(self, raw: UploadedFile, token, options):
        if raw is None or not raw.content:
            raise SourceProcessingError(self.kind, "Invalid file provided")

        source = safe_filename(raw.filename)

        try:
            if raw.mimetype in PDF_MIMETYPES:
                docs = await run_sync(extract_pdf_pages, raw.content, source)
            elif raw.mimetype in CSV_MIMETYPES:
                docs = await run_sync(extract_csv_rows, raw.content, source)
            else:
                raise SourceProcessingError(self.kind, "Only PDF and CSV files are allowed")
        except SourceProcessingError:
            raise
        except Exception as e:
            log.warning("File parsing failed | file=%s | error=%s", source, str(e))
            raise SourceProcessingError(
                self.kind, f"Could not read {raw.filename}", e
            ) from e

        if not docs:
            raise SourceProcessingError(self.kind, f"No content extracted from {raw.filename}")

        return docs, {
            "filename": raw.filename,
            "size": raw.size,
            "mimetype": raw.mimetype,
        }

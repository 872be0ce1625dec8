from __future__ import annotations

from typing import Dict, List, Optional

import requests
from langchain_core.documents import Document

from kb_chat.exception.custom_exception import SourceProcessingError
from kb_chat.logger import GLOBAL_LOGGER as log
from kb_chat.src.document_ingestion.base_loader import SourceLoader
from kb_chat.src.document_ingestion.transcript_providers import (
    TranscriptProvider,
    TranscriptSegment,
)
from kb_chat.utils.thread_pool import run_sync, with_timeout
from kb_chat.utils.url_utils import extract_video_id

OEMBED_URL = "https://www.youtube.com/oembed"


def format_timestamp(seconds: float) -> str:
    seconds = int(seconds)
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def group_segments(
    segments: List[TranscriptSegment], window_seconds: float
) -> List[List[TranscriptSegment]]:
    """Consecutive segments bucketed into windows of ``window_seconds``."""
    groups: List[List[TranscriptSegment]] = []
    current: List[TranscriptSegment] = []
    window_start = 0.0

    for seg in segments:
        if not current:
            window_start = seg.start
        elif seg.start - window_start >= window_seconds:
            groups.append(current)
            current = []
            window_start = seg.start
        current.append(seg)

    if current:
        groups.append(current)
    return groups


class VideoLoader(SourceLoader):
    """YouTube video transcript, one document per time window."""

    kind = "video"

    def __init__(
        self,
        vector_store,
        transcript_provider: TranscriptProvider,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        languages: Optional[List[str]] = None,
        segment_seconds: float = 120,
        request_timeout_seconds: float = 30,
    ):
        super().__init__(vector_store, chunk_size, chunk_overlap)
        self.transcript_provider = transcript_provider
        self.languages = languages or ["en"]
        self.segment_seconds = segment_seconds
        self.request_timeout_seconds = request_timeout_seconds

    def _fetch_video_info(self, url: str) -> Dict[str, str]:
        """Title and author via oEmbed; missing info is not an ingestion failure."""
        try:
            resp = requests.get(
                OEMBED_URL,
                params={"url": url, "format": "json"},
                timeout=self.request_timeout_seconds,
            )
            resp.raise_for_status()
            data = resp.json()
            return {
                "title": data.get("title") or "Unknown Title",
                "author": data.get("author_name") or "Unknown Author",
            }
        except (requests.RequestException, ValueError) as e:
            log.warning("Video info lookup failed | url=%s | error=%s", url, str(e))
            return {"title": "Unknown Title", "author": "Unknown Author"}

    async def _load(self, raw: str, token, options):
        video_id = extract_video_id(raw or "")
        if not video_id:
            raise SourceProcessingError(self.kind, "Invalid YouTube URL provided")

        languages = options.get("languages") or self.languages

        log.info("Processing YouTube video | video_id=%s", video_id)
        segments = await with_timeout(
            run_sync(self.transcript_provider.fetch, video_id, languages),
            self.request_timeout_seconds * 2,
            "Transcript fetch",
        )
        if not segments:
            raise SourceProcessingError(self.kind, "No transcript available for this video")

        info = await run_sync(self._fetch_video_info, raw)
        log.info(
            "Video info | title=%s | author=%s | segments=%d",
            info["title"],
            info["author"],
            len(segments),
        )

        docs: List[Document] = []
        for group in group_segments(segments, self.segment_seconds):
            text = " ".join(s.text.strip() for s in group if s.text.strip())
            if not text:
                continue
            start = group[0].start
            docs.append(
                Document(
                    page_content=text,
                    metadata={
                        "source": raw,
                        "video_id": video_id,
                        "title": info["title"],
                        "author": info["author"],
                        "start_seconds": int(start),
                        "start_timestamp": format_timestamp(start),
                        "timestamped_video_link": (
                            f"https://www.youtube.com/watch?v={video_id}&t={int(start)}s"
                        ),
                        "type": "video",
                    },
                )
            )

        return docs, {"url": raw, "video_id": video_id, **info}

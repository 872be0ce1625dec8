"""
Transcript sources for the video loader.

Two interchangeable providers sit behind ``TranscriptProvider``:

- ``LibraryTranscriptProvider`` talks to YouTube directly through
  youtube-transcript-api.
- ``SidecarTranscriptProvider`` asks a separate transcript service over HTTP,
  for deployments where YouTube blocks the API host.

``build_transcript_provider`` picks one from the ``video`` config section.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

import requests
from pydantic import BaseModel
from youtube_transcript_api import (
    NoTranscriptFound,
    TranscriptsDisabled,
    VideoUnavailable,
    YouTubeTranscriptApi,
)

from kb_chat.exception.custom_exception import SourceProcessingError
from kb_chat.logger import GLOBAL_LOGGER as log


class TranscriptSegment(BaseModel):
    text: str
    start: float
    duration: float = 0.0


class TranscriptProvider(ABC):
    @abstractmethod
    def fetch(self, video_id: str, languages: List[str]) -> List[TranscriptSegment]:
        """Blocking call; returns the ordered transcript segments."""


class LibraryTranscriptProvider(TranscriptProvider):
    def __init__(self):
        self.api = YouTubeTranscriptApi()

    def fetch(self, video_id: str, languages: List[str]) -> List[TranscriptSegment]:
        try:
            fetched = self.api.fetch(video_id, languages=languages)
        except TranscriptsDisabled as e:
            raise SourceProcessingError(
                "video", "Transcript is not available for this video", e
            ) from e
        except NoTranscriptFound as e:
            raise SourceProcessingError("video", "No transcript found for this video", e) from e
        except VideoUnavailable as e:
            raise SourceProcessingError("video", "Video is unavailable or private", e) from e

        return [
            TranscriptSegment(text=s.text, start=s.start, duration=s.duration)
            for s in fetched
        ]


class SidecarTranscriptProvider(TranscriptProvider):
    def __init__(self, base_url: str, timeout_seconds: float = 30):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def fetch(self, video_id: str, languages: List[str]) -> List[TranscriptSegment]:
        try:
            resp = requests.post(
                f"{self.base_url}/transcript",
                json={"video_id": video_id, "languages": languages},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            log.error("Transcript sidecar unreachable | error=%s", str(e))
            raise SourceProcessingError(
                "video", "Transcript service is unavailable, please try again", e
            ) from e

        if resp.status_code == 404:
            raise SourceProcessingError("video", "No transcript found for this video")
        if resp.status_code >= 400:
            log.error(
                "Transcript sidecar error | status=%s | body=%s",
                resp.status_code,
                resp.text[:200],
            )
            raise SourceProcessingError("video", "Transcript service failed for this video")

        payload = resp.json() or {}
        return [TranscriptSegment(**seg) for seg in payload.get("segments", [])]


def build_transcript_provider(video_config: dict | None) -> TranscriptProvider:
    video_config = video_config or {}
    provider = video_config.get("transcript_provider", "library")

    if provider == "library":
        return LibraryTranscriptProvider()
    if provider == "sidecar":
        return SidecarTranscriptProvider(
            base_url=video_config["sidecar_url"],
            timeout_seconds=video_config.get("request_timeout_seconds", 30),
        )
    raise ValueError(f"Unsupported transcript provider {provider}")

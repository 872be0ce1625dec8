from __future__ import annotations

import re
import time
from collections import deque
from datetime import datetime, timezone
from typing import Dict, List, Optional

import requests
from bs4 import BeautifulSoup
from langchain_core.documents import Document

from kb_chat.exception.custom_exception import SourceProcessingError
from kb_chat.logger import GLOBAL_LOGGER as log
from kb_chat.src.document_ingestion.base_loader import SourceLoader
from kb_chat.utils.thread_pool import run_sync
from kb_chat.utils.url_utils import is_binary_link, normalize_link, same_hostname

STRIP_TAGS = ["script", "style", "noscript", "nav", "footer", "header"]
MAIN_SELECTORS = ["main", "[role=main]", ".content"]


def extract_main_text(html: str) -> tuple[str, str]:
    """Return (title, readable text) with page chrome removed."""
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""

    for tag in soup(STRIP_TAGS):
        tag.decompose()

    main = None
    for selector in MAIN_SELECTORS:
        main = soup.select_one(selector)
        if main is not None:
            break
    main = main or soup.body or soup

    text = main.get_text(separator="\n")
    lines = [line.strip() for line in text.splitlines()]
    text = "\n".join(line for line in lines if line)
    return title, re.sub(r"\n{3,}", "\n\n", text)


def extract_links(html: str, page_url: str) -> List[str]:
    """Same-hostname, non-binary links found on a page, in document order."""
    soup = BeautifulSoup(html, "html.parser")
    links: List[str] = []
    for anchor in soup.find_all("a", href=True):
        link = normalize_link(anchor["href"], page_url)
        if not link or not same_hostname(link, page_url) or is_binary_link(link):
            continue
        if link not in links:
            links.append(link)
    return links


class WebLoader(SourceLoader):
    """
    Web pages. ``single`` mode loads just the given URL; ``site`` mode first
    discovers pages breadth-first on the same hostname, up to ``max_pages``.
    """

    kind = "link"

    def __init__(
        self,
        vector_store,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        crawl_depth: str = "site",
        max_pages: int = 10,
        request_timeout_seconds: float = 30,
        delay_seconds: float = 1.0,
        user_agent: str = "kb-chat-crawler/1.0",
    ):
        super().__init__(vector_store, chunk_size, chunk_overlap)
        self.crawl_depth = crawl_depth
        self.max_pages = max_pages
        self.request_timeout_seconds = request_timeout_seconds
        self.delay_seconds = delay_seconds
        self.user_agent = user_agent

    def _fetch(self, url: str) -> Optional[str]:
        """Download one page; None for non-HTML responses."""
        resp = requests.get(
            url,
            timeout=self.request_timeout_seconds,
            headers={"User-Agent": self.user_agent},
        )
        resp.raise_for_status()
        content_type = resp.headers.get("Content-Type", "text/html")
        if "html" not in content_type:
            log.info("Skipping non-HTML page | url=%s | content_type=%s", url, content_type)
            return None
        return resp.text

    def crawl(self, base_url: str, crawl_depth: str, max_pages: int) -> Dict[str, str]:
        """
        Breadth-first discovery. Returns {url: html} for every page fetched,
        in visit order.
        """
        if crawl_depth == "single":
            log.info("Processing single URL | url=%s", base_url)
            max_pages = 1

        visited: set[str] = set()
        to_visit = deque([base_url])
        pages: Dict[str, str] = {}

        while to_visit and len(pages) < max_pages:
            current = to_visit.popleft()
            if current in visited:
                continue
            visited.add(current)

            if pages and self.delay_seconds:
                time.sleep(self.delay_seconds)

            try:
                log.info("Fetching page | url=%s", current)
                html = self._fetch(current)
            except requests.RequestException as e:
                log.warning("Error fetching page | url=%s | error=%s", current, str(e))
                continue

            if html is None:
                continue
            pages[current] = html

            if crawl_depth == "single":
                break

            for link in extract_links(html, current):
                if link not in visited and link not in to_visit:
                    to_visit.append(link)

        log.info("Discovered pages | base_url=%s | count=%d", base_url, len(pages))
        return pages

    def _pages_to_documents(self, pages: Dict[str, str]) -> List[Document]:
        docs: List[Document] = []
        crawled_at = datetime.now(timezone.utc).isoformat()
        for url, html in pages.items():
            title, text = extract_main_text(html)
            if not text.strip():
                log.info("Skipped page with no content | url=%s", url)
                continue
            docs.append(
                Document(
                    page_content=text,
                    metadata={
                        "source": url,
                        "title": title,
                        "crawled_at": crawled_at,
                        "type": "link",
                    },
                )
            )
        return docs

    async def _load(self, raw: str, token, options):
        crawl_depth = options.get("crawl_depth") or self.crawl_depth
        max_pages = int(options.get("max_pages") or self.max_pages)

        if crawl_depth not in ("single", "site"):
            raise SourceProcessingError(self.kind, f"Unknown crawl depth: {crawl_depth}")

        pages = await run_sync(self.crawl, raw, crawl_depth, max_pages)
        docs = await run_sync(self._pages_to_documents, pages)

        if not docs:
            raise SourceProcessingError(
                self.kind, "No content could be extracted from the provided URL(s)"
            )

        return docs, {
            "url": raw,
            "crawl_depth": crawl_depth,
            "pages": [d.metadata["source"] for d in docs],
        }

"""
Streaming HTML parser for extracting links and visible text.

Pages are tokenized in a single forward pass with lxml's event-driven HTML
parser, so no DOM is built and link discovery starts before the whole
document has been read.
"""

import logging
from dataclasses import dataclass
from typing import AsyncIterable, Awaitable, Callable, Dict, List, Optional

from bs4.dammit import EncodingDetector
from lxml import etree

from .links import SiteLink, resolve_link


LinkCallback = Callable[[str], Awaitable[None]]

SUPPRESSED_TAGS = frozenset({'script', 'style'})


@dataclass
class ExtractionResult:
    """Outcome of scanning one page."""
    text: str
    links_found: int = 0
    truncated: bool = False


class _TokenTarget:
    """
    lxml parser target receiving start/end/data events.

    Text is buffered until the next tag event so that a text token split
    across feed boundaries is handled as one token.
    """

    def __init__(self, site_link: SiteLink):
        self.site_link = site_link
        self.pending_links: List[str] = []
        self._parts: List[str] = []
        self._buffer: List[str] = []
        self._last_start_tag: Optional[str] = None

    def start(self, tag: str, attrib: Dict[str, str]):
        self._flush_text()
        tag = tag.lower()
        self._last_start_tag = tag

        if tag == 'a':
            for name, value in attrib.items():
                if name.lower() == 'href':
                    self.pending_links.append(resolve_link(self.site_link.host, value))
        elif tag == 'br':
            self._parts.append("\n")

    def end(self, tag: str):
        self._flush_text()
        if tag.lower() in SUPPRESSED_TAGS and self._last_start_tag == tag.lower():
            self._last_start_tag = None

    def data(self, data: str):
        self._buffer.append(data)

    def comment(self, text: str):
        pass

    def close(self) -> str:
        self._flush_text()
        return self.text

    @property
    def text(self) -> str:
        return "".join(self._parts).strip()

    def _flush_text(self):
        if not self._buffer:
            return
        token = "".join(self._buffer).strip()
        self._buffer = []
        if not token or self._last_start_tag in SUPPRESSED_TAGS:
            return
        self._parts.append(token + " ")


class LinkTextExtractor:
    """
    Extracts outbound links and visible text from an HTML byte stream.

    Every anchor ``href`` is resolved against the page host and handed to
    ``on_link`` as soon as the chunk containing it has been tokenized.
    ``<br>`` contributes a newline and text inside ``<script>``/``<style>``
    is dropped. A tokenization or stream error ends the scan early; whatever
    was collected up to that point is returned with ``truncated`` set.
    """

    def __init__(self, site_link: SiteLink, on_link: LinkCallback,
                 default_encoding: str = 'utf-8'):
        self.site_link = site_link
        self.on_link = on_link
        self.default_encoding = default_encoding
        self.logger = logging.getLogger(__name__)

    def _new_parser(self, target: _TokenTarget, first_chunk: bytes) -> etree.HTMLParser:
        declared = EncodingDetector.find_declared_encoding(first_chunk, is_html=True)
        if declared:
            try:
                return etree.HTMLParser(target=target, encoding=declared)
            except LookupError:
                self.logger.debug(f"Unknown declared encoding {declared!r} on {self.site_link}")
        return etree.HTMLParser(target=target, encoding=self.default_encoding)

    async def _emit(self, target: _TokenTarget) -> int:
        links, target.pending_links = target.pending_links, []
        for link in links:
            await self.on_link(link)
        return len(links)

    async def extract(self, chunks: AsyncIterable[bytes]) -> ExtractionResult:
        """Scan the page and return its visible text."""
        target = _TokenTarget(self.site_link)
        parser: Optional[etree.HTMLParser] = None
        links_found = 0
        truncated = False

        try:
            async for chunk in chunks:
                if not chunk:
                    continue
                if parser is None:
                    parser = self._new_parser(target, chunk)
                parser.feed(chunk)
                links_found += await self._emit(target)

            if parser is not None:
                parser.close()
        except (etree.LxmlError, UnicodeError) as e:
            truncated = True
            self.logger.warning(f"Stopped parsing {self.site_link} early: {e}")

        # links tokenized in the final feed/close are still delivered
        links_found += await self._emit(target)

        return ExtractionResult(text=target.close(), links_found=links_found, truncated=truncated)

    async def extract_bytes(self, html: bytes) -> ExtractionResult:
        """Scan an in-memory page."""
        async def single_chunk():
            yield html

        return await self.extract(single_chunk())

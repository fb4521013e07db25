"""
Processing stage: extracts links and text from stored pages.
"""

import time
from typing import Dict, Optional, Set, Union

from .links import SiteLink
from .parser import ExtractionResult, LinkTextExtractor
from .url_frontier import URLFrontier
from ..storage.blob_store import BlobNotFoundError, BlobStore
from ..storage.database import DatabaseManager, RecordNotFoundError
from ..utils.logger import get_crawler_logger
from ..utils.monitoring import CrawlerMonitor


ADMIT_ALL = 'store'
ADMIT_ONCE_PER_PAGE = 'page'


class ProcessingWorker:
    """
    Handles process-topic messages (canonical keys).

    Loads the page blob, streams it through the extractor, publishes each
    admitted link to the fetch topic as soon as it is found and finally
    stores the extracted text on the site record.

    Link admission is explicit: ``store`` publishes every link and leaves
    deduplication to the fetch stage's upsert-if-changed check, ``page``
    additionally skips links already published from the same page.
    """

    def __init__(self, frontier: URLFrontier, database: DatabaseManager, blob_store: BlobStore,
                 link_admission: str = ADMIT_ALL, monitor: Optional[CrawlerMonitor] = None,
                 worker_id: str = "process-worker"):
        if link_admission not in (ADMIT_ALL, ADMIT_ONCE_PER_PAGE):
            raise ValueError(f"Unknown link admission policy: {link_admission}")

        self.frontier = frontier
        self.database = database
        self.blob_store = blob_store
        self.link_admission = link_admission
        self.monitor = monitor
        self.logger = get_crawler_logger(__name__, worker=worker_id)

        self.stats = {
            'received': 0,
            'processed': 0,
            'skipped': 0,
            'truncated': 0,
            'links_published': 0
        }

    def _record_page(self, result: str):
        if self.monitor:
            self.monitor.record_page_processed(result)

    async def handle_message(self, payload: Union[str, bytes]) -> Optional[ExtractionResult]:
        """Process one canonical key. Returns the extraction result, or None if skipped."""
        self.stats['received'] += 1
        key = payload.decode('utf-8', errors='replace') if isinstance(payload, bytes) else payload
        key = key.strip()

        if not key:
            self.stats['skipped'] += 1
            self._record_page('skipped')
            self.logger.warning("Received empty key on process topic, skipping")
            return None

        try:
            chunks = await self.blob_store.open_blob(key)
        except BlobNotFoundError:
            self.stats['skipped'] += 1
            self._record_page('skipped')
            self.logger.warning(f"No stored content for {key}, skipping")
            return None

        site_link = SiteLink.from_key(key)
        published: Set[str] = set()

        async def admit(link: str):
            if not link.strip():
                return
            if self.link_admission == ADMIT_ONCE_PER_PAGE:
                if link in published:
                    return
                published.add(link)
            await self.frontier.publish_link(link)
            self.stats['links_published'] += 1
            if self.monitor:
                self.monitor.record_link_published()
            self.logger.debug(f"Found link on {key}: {link}")

        extractor = LinkTextExtractor(site_link, admit)
        result = await extractor.extract(chunks)
        if result.truncated:
            self.stats['truncated'] += 1

        updated = await self.database.update_record(key, {
            'content': result.text,
            'last_updated': int(time.time())
        })
        if not updated:
            raise RecordNotFoundError(f"Record not found for {key}")

        self.stats['processed'] += 1
        self._record_page('truncated' if result.truncated else 'complete')
        self.logger.info(f"Updated site record for {key} ({result.links_found} links found)")
        return result

    def get_stats(self) -> Dict[str, int]:
        return self.stats.copy()

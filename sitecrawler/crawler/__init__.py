"""
Web crawler core components.
"""

from .links import SiteLink, InvalidLinkError, canonical_key, resolve_link, normalize_scheme
from .url_frontier import URLFrontier, CrawlMessage, MalformedMessageError
from .fetcher import WebFetcher, FetchResult
from .parser import LinkTextExtractor, ExtractionResult
from .retry import RetryCoordinator, CrawlAttempt, CrawlState, InvalidTransitionError
from .fetch_worker import FetchWorker
from .process_worker import ProcessingWorker

__all__ = [
    'SiteLink', 'InvalidLinkError', 'canonical_key', 'resolve_link', 'normalize_scheme',
    'URLFrontier', 'CrawlMessage', 'MalformedMessageError',
    'WebFetcher', 'FetchResult',
    'LinkTextExtractor', 'ExtractionResult',
    'RetryCoordinator', 'CrawlAttempt', 'CrawlState', 'InvalidTransitionError',
    'FetchWorker', 'ProcessingWorker'
]

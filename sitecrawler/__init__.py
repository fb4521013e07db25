"""
Site Crawler

A two-stage distributed web crawler: fetch workers store changed page
content, processing workers extract links and text and feed the frontier.
"""

__version__ = "1.0.0"
__description__ = "A two-stage distributed web crawler built on Redis topics"

"""Runtime settings for the book source service.

Every value can be overridden through an environment variable so that a
deployment can tune timeouts and crawl limits without code changes.
"""

from __future__ import annotations

import os

# Some sites return a 403 or a stripped page when no browser user agent
# is sent.
USER_AGENT = os.environ.get(
    "BOOKSOURCE_USER_AGENT",
    (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/16.0 Safari/605.1.15"
    ),
)

# Seconds before a single request is abandoned.
REQUEST_TIMEOUT = float(os.environ.get("BOOKSOURCE_REQUEST_TIMEOUT", "30"))

# Upper bounds for the paginated crawls.
MAX_CONTENT_PAGES = int(os.environ.get("BOOKSOURCE_MAX_CONTENT_PAGES", "30"))
MAX_TOC_PAGES = int(os.environ.get("BOOKSOURCE_MAX_TOC_PAGES", "50"))

# Pause between two pages of the same chapter (seconds).
PAGE_DELAY = float(os.environ.get("BOOKSOURCE_PAGE_DELAY", "0.2"))

# How many sources are queried at the same time during a search.
SEARCH_CONCURRENCY = int(os.environ.get("BOOKSOURCE_SEARCH_CONCURRENCY", "16"))

# Sandbox limits for embedded rule scripts.
SCRIPT_TIME_LIMIT = float(os.environ.get("BOOKSOURCE_SCRIPT_TIME_LIMIT", "5"))
SCRIPT_MEMORY_LIMIT = int(os.environ.get("BOOKSOURCE_SCRIPT_MEMORY_LIMIT", str(32 * 1024 * 1024)))

LOG_LEVEL = os.environ.get("BOOKSOURCE_LOG_LEVEL", "INFO").upper()

"""
Term Lookup - Standardized adverse-effect terms from an HTTP service

Request:  POST <url> {"query": "<symptom description>"}
Response: {"results": [{"LLT": "<lowest level term>"}, ...]}

Any failure (network error, non-2xx status, unexpected body) yields an
empty list: the Report Agent treats "no terms" as a normal turn.
"""

import logging
from typing import List

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
TERM_KEY = 'LLT'


class TermLookupClient:
    """Blocking client for the term lookup service"""

    def __init__(self, url: str, timeout: float = DEFAULT_TIMEOUT, session=None):
        """
        Args:
            url: Lookup endpoint
            timeout: Request timeout in seconds
            session: Optional requests.Session (connection reuse, tests)
        """
        if not url:
            raise ValueError("term lookup url must not be empty")
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        logger.info(f"Term lookup client initialized: {url}")

    def lookup(self, query: str) -> List[str]:
        """
        Look up candidate terms for a free-text symptom description.

        Returns:
            list: Terms in service order (possibly empty)
        """
        if not query or not query.strip():
            return []

        try:
            response = self.session.post(
                self.url,
                json={'query': query},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Term lookup request failed: {e}")
            return []

        if not response.ok:
            logger.error(
                f"Term lookup failed with status {response.status_code}: {response.text[:200]}"
            )
            return []

        try:
            body = response.json()
        except ValueError as e:
            logger.error(f"Term lookup returned invalid JSON: {e}")
            return []

        results = body.get('results') if isinstance(body, dict) else None
        if not isinstance(results, list):
            logger.warning("Term lookup response has no 'results' list")
            return []

        terms = [
            item[TERM_KEY] for item in results
            if isinstance(item, dict) and isinstance(item.get(TERM_KEY), str)
        ]
        logger.info(f"Term lookup: {len(terms)} term(s) for {query!r}")
        return terms

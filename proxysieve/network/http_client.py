"""
Network operations and HTTP client management.

This module handles HTTP sessions for subscription downloads and for
latency probes sent through local engine inbounds.
"""

import logging
import random
import threading
from typing import List, Optional

import psutil
import requests
import urllib3
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from proxysieve.core.utils import decode_subscription_body, read_lines, write_lines

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)

# Browser user agents for rotation
BROWSER_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:122.0) Gecko/20100101 Firefox/122.0",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
]


def socks_proxies(port: int) -> dict:
    """requests proxies mapping for a local socks5 inbound (remote DNS)."""
    url = f"socks5h://127.0.0.1:{port}"
    return {"http": url, "https": url}


class HTTPClientManager:
    """Manages HTTP sessions with memory-aware connection pooling."""

    def __init__(self, retries: int = 2):
        self.retries = retries
        self._session: Optional[requests.Session] = None
        self._local = threading.local()

    def _create_session(self, pool_connections: int = 10, pool_maxsize: int = 10,
                        retries: Optional[int] = None) -> requests.Session:
        """Create a requests session with connection pooling."""
        session = requests.Session()
        retry_strategy = Retry(
            total=self.retries if retries is None else retries,
            backoff_factor=0.3,
            status_forcelist=[500, 502, 503, 504],
        )
        adapter = HTTPAdapter(
            pool_connections=pool_connections,
            pool_maxsize=pool_maxsize,
            max_retries=retry_strategy
        )
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def get_session(self) -> requests.Session:
        """Get or create the shared download session."""
        if self._session is None:
            mem = psutil.virtual_memory().percent
            if mem >= 90:
                pool_conn, pool_max = 3, 5
            elif mem >= 80:
                pool_conn, pool_max = 6, 15
            else:
                pool_conn, pool_max = 10, 20
            self._session = self._create_session(pool_conn, pool_max)
        return self._session

    def thread_session(self) -> requests.Session:
        """Per-thread session without retries, for timing probes."""
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._create_session(1, 4, retries=0)
            self._local.session = session
        return session

    def reset_session(self):
        """Close and reset the shared session."""
        if self._session:
            self._session.close()
            self._session = None

    def random_user_agent(self) -> str:
        return random.choice(BROWSER_USER_AGENTS)


class SubscriptionFetcher:
    """Downloads subscription links and collects the URIs they carry."""

    def __init__(self, http_manager: Optional[HTTPClientManager] = None, timeout: float = 10):
        self.http_manager = http_manager or HTTPClientManager()
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def fetch(self, url: str) -> Optional[List[str]]:
        """Fetch one subscription. Returns its URI lines, or None on failure."""
        session = self.http_manager.get_session()
        headers = {"User-Agent": self.http_manager.random_user_agent()}
        try:
            resp = session.get(url, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            self.logger.warning(f"Error downloading {url}: {e}")
            return None
        if resp.status_code != 200:
            self.logger.warning(f"Error reading response from {url}: HTTP {resp.status_code}")
            return None

        content = decode_subscription_body(resp.text)
        return [line.strip() for line in content.split("\n") if "://" in line]

    def download(self, link_list: str, output: str) -> int:
        """Fetch every subscription listed in link_list into output.

        Blank and '#' lines of link_list are skipped. Raises OSError when
        link_list cannot be read or output cannot be written. Returns
        the number of URI lines written.
        """
        links = [line for line in read_lines(link_list) if not line.startswith("#")]
        self.logger.info(f"Downloading {len(links)} subscriptions into {output}")

        collected: List[str] = []
        succeeded = 0
        try:
            for url in links:
                self.logger.info(f"Processing: {url}")
                lines = self.fetch(url)
                if lines is None:
                    continue
                succeeded += 1
                collected.extend(lines)
                self.logger.info(f"  -> found {len(lines)} potential configs")
        finally:
            self.http_manager.reset_session()

        count = write_lines(output, collected)
        self.logger.info(f"Concatenated {succeeded}/{len(links)} subscriptions, {count} configs saved to {output}")
        return count

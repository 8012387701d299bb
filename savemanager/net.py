"""
Shared HTTP session for the network-facing screens.
"""

from typing import Any, Dict, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import NetworkError
from .monitor import log_event

DEFAULT_USER_AGENT = "KazetaPlus-Updater"
DEFAULT_TIMEOUT: Tuple[int, int] = (10, 90)


def build_session(user_agent: str = DEFAULT_USER_AGENT) -> requests.Session:
    session = requests.Session()

    # Transient server errors are retried; anything else surfaces to the screen
    retries = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["HEAD", "GET", "OPTIONS"],
    )
    adapter = HTTPAdapter(max_retries=retries, pool_connections=4, pool_maxsize=4)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers.update({
        'User-Agent': user_agent,
        'Accept': 'application/vnd.github+json',
    })
    log_event('net.session.created', f'user_agent={user_agent}')
    return session


def timeout_from_settings(settings: Dict[str, Any]) -> Tuple[int, int]:
    raw = settings.get('network', {}).get('timeout', DEFAULT_TIMEOUT)
    try:
        connect, read = raw
        return int(connect), int(read)
    except (TypeError, ValueError):
        return DEFAULT_TIMEOUT


def get_json(session: requests.Session, url: str, timeout=DEFAULT_TIMEOUT) -> Any:
    """GET ``url`` and decode JSON, raising NetworkError on any failure."""
    try:
        resp = session.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise NetworkError(f"Request to {url} failed: {e}") from e
    if resp.status_code != 200:
        raise NetworkError(f"Request to {url} failed with status {resp.status_code}")
    try:
        return resp.json()
    except ValueError as e:
        raise NetworkError(f"Invalid JSON from {url}: {e}") from e


def download_bytes(session: requests.Session, url: str, timeout=DEFAULT_TIMEOUT) -> bytes:
    try:
        resp = session.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise NetworkError(f"Download of {url} failed: {e}") from e
    if resp.status_code != 200:
        raise NetworkError(f"Download of {url} failed with status {resp.status_code}")
    return resp.content

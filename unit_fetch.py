import threading
from http.cookiejar import MozillaCookieJar
from typing import Callable, Dict, List, Optional

import requests
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from unit_models import ConfigError

USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36"
DEFAULT_TIMEOUT = 30.0


def parse_header_args(values: Optional[List[str]]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for header in values or []:
        if ":" not in header:
            raise ConfigError(f"invalid header {header!r}, expected 'Key: Value'")
        key, value = header.split(":", 1)
        headers[key.strip()] = value.strip()
    return headers


def build_session(
    headers: Optional[Dict[str, str]] = None,
    cookie_file: Optional[str] = None,
) -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": USER_AGENT})
    if headers:
        session.headers.update(headers)
    if cookie_file:
        jar = MozillaCookieJar()
        try:
            jar.load(cookie_file, ignore_discard=True, ignore_expires=True)
        except OSError as exc:
            raise ConfigError(f"could not load cookie file {cookie_file}: {exc}") from exc
        session.cookies.update(jar)
    return session


class ThreadSessions:
    """One ``requests.Session`` per worker thread."""

    def __init__(self, factory: Callable[[], requests.Session]):
        self._factory = factory
        self._local = threading.local()
        self._lock = threading.Lock()
        self._sessions: List[requests.Session] = []

    def get(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._factory()
            self._local.session = session
            with self._lock:
                self._sessions.append(session)
        return session

    def close(self) -> None:
        with self._lock:
            for session in self._sessions:
                session.close()
            self._sessions.clear()


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return exc.response.status_code >= 500
    return False


def fetch_response(
    session: requests.Session,
    url: str,
    timeout: float = DEFAULT_TIMEOUT,
    retries: int = 0,
    backoff: float = 1.0,
    allow_redirects: bool = True,
) -> requests.Response:
    """GET ``url``, retrying connection errors, timeouts and 5xx responses.

    With ``allow_redirects=False`` a 3xx comes back as-is so the caller can
    check ``response.is_redirect``. The last error is re-raised once the
    attempts run out.
    """
    retrying = Retrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait_exponential(multiplier=backoff, max=30),
        retry=retry_if_exception(is_transient),
        reraise=True,
    )
    for attempt in retrying:
        with attempt:
            response = session.get(url, timeout=timeout, allow_redirects=allow_redirects)
            response.raise_for_status()
    return response


def fetch(session: requests.Session, url: str, **kwargs) -> str:
    return fetch_response(session, url, **kwargs).text

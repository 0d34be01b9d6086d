import re
from typing import List, Optional, Set

import requests

from run_log import RunLog
from unit_checkpoint import filter_pending
from unit_fetch import DEFAULT_TIMEOUT, fetch
from unit_models import DiscoveryError, ScrapeConfig, Unit

UNIT_LINK_PATTERN = r'"/Unit/Details/(\d+)/([^"]*)"'


def compile_link_pattern(pattern: str = UNIT_LINK_PATTERN) -> re.Pattern:
    try:
        compiled = re.compile(pattern)
    except re.error as exc:
        raise DiscoveryError(f"invalid unit link pattern {pattern!r}: {exc}") from exc
    if compiled.groups < 2:
        raise DiscoveryError(f"unit link pattern {pattern!r} needs an id and a designation group")
    return compiled


def parse_listing(html: str, link_re: Optional[re.Pattern] = None) -> List[Unit]:
    link_re = link_re or compile_link_pattern()
    return [Unit(id=match.group(1), designation=match.group(2)) for match in link_re.finditer(html)]


def discover_units(
    session: requests.Session,
    config: ScrapeConfig,
    completed_ids: Set[str],
    log: Optional[RunLog] = None,
    timeout: float = DEFAULT_TIMEOUT,
    retries: int = 0,
    backoff: float = 1.0,
) -> List[Unit]:
    """Fetch the listing once and return the units still to scrape, in page order."""
    link_re = compile_link_pattern()
    url = config.listing_url()
    try:
        html = fetch(session, url, timeout=timeout, retries=retries, backoff=backoff)
    except requests.RequestException as exc:
        raise DiscoveryError(f"listing fetch failed url={url} error={exc}") from exc

    found = parse_listing(html, link_re)
    pending = filter_pending(found, completed_ids, log)
    if log:
        log.write(
            f"discovered listed={len(found)} already_completed={len(completed_ids)} pending={len(pending)}"
        )
    return pending

"""Shared fixtures: an in-memory stand-in for the unit catalog site."""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Set

import pytest
import requests

from unit_models import ScrapeConfig

BASE_URL = "https://mlu.test"

CARD_HTML = """
<form>
  <input id="Data_Name" class="form-control" value="Atlas" />
  <input id="Data_Model" class="form-control" value="AS7-D" />
  <input id="Data_PV" value="52" />
  <input id="Data_Type" value="BM" />
  <input id="Data_Size" value="4" />
  <input id="Data_Move" value="6" />
  <input id="Data_Skill" value="4" />
  <input id="Data_Short" value="5" />
  <input id="Data_ShortMin" type="checkbox" checked="checked" />
  <input id="Data_Medium" value="5" />
  <input id="Data_MediumMin" type="checkbox" />
  <input id="Data_Long" value="2" />
  <input id="Data_LongMin" type="checkbox" />
  <input id="Data_Extreme" value="0" />
  <input id="Data_ExtremeMin" type="checkbox" checked />
  <input id="Data_Overheat" value="0" />
  <input id="Data_Armor" value="10" />
  <input id="Data_Structure" value="8" />
  <input id="Data_Threshold" value="3" />
  <textarea id="Data_Specials" name="Specials">
      AC2/2/-, IF1, LRM1/1/1
  </textarea>
  <div id="Data_Image">
      https://img.mlu.test/atlas.png
  </div>
</form>
"""

OVERVIEW_HTML = """
<dl class="dl-horizontal">
    <dt>Tonnage</dt>
    <dd>100</dd>
    <dt>Battle Value</dt>
    <dd>1,897</dd>
    <dt>Cost</dt>
    <dd>9,626,000</dd>
    <dt>Rules Level</dt>
    <dd>Introductory</dd>
    <dt>Technology</dt>
    <dd>Inner Sphere</dd>
    <dt>Unit Type</dt>
    <dd>BattleMech</dd>
    <dt>Unit Role</dt>
    <dd>Juggernaut</dd>
    <dt>Date Introduced</dt>
    <dd>2755</dd>
    <dt>Era</dt>
    <dd>Star League (2571 - 2780)</dd>
    <dt>Notes</dt>
    <dd>Featured in TRO 3025</dd>
</dl>
"""


def make_response(url: str, status: int = 200, text: str = "", headers: Optional[Dict[str, str]] = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.url = url
    response.reason = "OK" if status < 400 else "Error"
    response._content = text.encode("utf-8")
    response.encoding = "utf-8"
    response.headers.update(headers or {})
    return response


def listing_html(units: Iterable[tuple]) -> str:
    rows = [
        f'<tr><td><a href="/Unit/Details/{unit_id}/{designation}">{designation}</a></td></tr>'
        for unit_id, designation in units
    ]
    return "<table>\n" + "\n".join(rows) + "\n</table>"


class FakeSite:
    """Serves listing, custom card and overview pages; usable as a session."""

    def __init__(
        self,
        units: Iterable[tuple],
        redirect_ids: Optional[Set[str]] = None,
        failing_overview_ids: Optional[Set[str]] = None,
        listing_error: Optional[Exception] = None,
        card_status: Optional[Dict[str, int]] = None,
    ):
        self.units = list(units)
        self.redirect_ids = set(redirect_ids or ())
        self.failing_overview_ids = set(failing_overview_ids or ())
        self.listing_error = listing_error
        self.card_status = dict(card_status or {})
        self.calls: List[str] = []
        self.closed = False
        self._lock = threading.Lock()

    def get(self, url: str, timeout=None, allow_redirects: bool = True) -> requests.Response:
        with self._lock:
            self.calls.append(url)
        path = url[len(BASE_URL):]
        if path.startswith("/Unit/QuickList"):
            if self.listing_error is not None:
                raise self.listing_error
            return make_response(url, text=listing_html(self.units))
        if path.startswith("/Unit/Card/"):
            unit_id = path.rsplit("/", 1)[-1]
            if unit_id in self.redirect_ids:
                return make_response(url, status=302, headers={"Location": "/Account/Login"})
            if unit_id in self.card_status:
                return make_response(url, text="<h1>Not Found</h1>", status=self.card_status[unit_id])
            return make_response(url, text=CARD_HTML.replace("Atlas", f"Unit {unit_id}"))
        if path.startswith("/Unit/Details/"):
            unit_id = path.split("/")[3]
            if unit_id in self.failing_overview_ids:
                raise requests.ConnectionError(f"connection reset for {unit_id}")
            return make_response(url, text=OVERVIEW_HTML)
        return make_response(url, status=404)

    def close(self) -> None:
        self.closed = True

    def card_calls(self) -> List[str]:
        return [url for url in self.calls if "/Unit/Card/" in url]


@pytest.fixture
def config() -> ScrapeConfig:
    return ScrapeConfig(
        base_url=BASE_URL,
        listing_path="/Unit/QuickList",
        detail_path="/Unit/Details",
        custom_card_path="/Unit/Card",
        filter_query="Types=18&HasBV=true",
    )


@pytest.fixture
def catalog() -> List[tuple]:
    return [(str(100 + i), f"unit-{i}") for i in range(7)]

"""
MEAG Power pricing portal.

The portal is an ASP.NET/DNN site: GET the login page, replay its hidden
fields (VIEWSTATE, EVENTVALIDATION, ...) with the credentials, then read the
cents/kWh column of the pricing table. Sessions are cookie based.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin

import aiohttp
from bs4 import BeautifulSoup, Tag

from core.config import PriceSettings
from core.models import PriceExtremes
from providers.base import PriceSource, PriceSourceError

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124 Safari/537.36"
)
DEFAULT_SUBMIT = "dnn$ctr$Login$Login_DNN$cmdLogin"
LOOSE_PRICE_RE = re.compile(r"\b\d{1,2}\.\d{3}\b")
POSTBACK_RE = re.compile(r"__doPostBack\('([^']+)'")
SUBMIT_NAME_RE = re.compile(r"cmdlogin|btnlogin|loginbutton")


# ============================================================================
# HTML parsing
# ============================================================================

@dataclass
class LoginForm:
    action: Optional[str] = None
    hidden: Dict[str, str] = field(default_factory=dict)
    user_field: Optional[str] = None
    pass_field: Optional[str] = None
    submit_name: Optional[str] = None
    event_target: Optional[str] = None


def _attr(el: Tag, name: str) -> str:
    value = el.get(name)
    if isinstance(value, list):
        return " ".join(value)
    return value or ""


def _is_user_input(el: Tag) -> bool:
    return "user" in _attr(el, "name").lower() and (_attr(el, "type") or "text").lower() != "hidden"


def _is_password_input(el: Tag) -> bool:
    return _attr(el, "type").lower() == "password"


def parse_login_form(html: str) -> LoginForm:
    """Pick the form holding both a user and a password input (else the first form)."""
    soup = BeautifulSoup(html, "html.parser")
    forms = soup.find_all("form")
    if not forms:
        return LoginForm()

    form = next(
        (f for f in forms
         if any(_is_user_input(i) for i in f.find_all("input"))
         and any(_is_password_input(i) for i in f.find_all("input"))),
        forms[0],
    )

    result = LoginForm(action=form.get("action"))
    for el in form.find_all("input", type=lambda t: bool(t) and t.lower() == "hidden"):
        if _attr(el, "name"):
            result.hidden[_attr(el, "name")] = _attr(el, "value")
    for el in form.find_all("input"):
        name = _attr(el, "name")
        if not name or _attr(el, "type").lower() == "hidden":
            continue
        if result.user_field is None and _is_user_input(el):
            result.user_field = name
        elif result.pass_field is None and _is_password_input(el):
            result.pass_field = name

    for el in form.find_all(["input", "button", "a"]):
        if el.name == "input" and _attr(el, "type").lower() != "submit":
            continue
        name = _attr(el, "name")
        kind = _attr(el, "type").lower()
        text = "" if el.name == "input" else el.get_text()
        value = (_attr(el, "value") or text).lower()
        if result.submit_name is None and SUBMIT_NAME_RE.search(name.lower()):
            result.submit_name = name
        if result.submit_name is None and (kind == "submit" or el.name == "button") and "login" in value + name.lower():
            result.submit_name = name or "login"
        if result.event_target is None and el.name in ("a", "button"):
            match = POSTBACK_RE.search(_attr(el, "onclick"))
            if match:
                result.event_target = match.group(1)
    return result


def build_login_payload(form: LoginForm, username: str, password: str) -> Dict[str, str]:
    payload = dict(form.hidden)
    payload[form.user_field or "username"] = username
    payload[form.pass_field or "password"] = password
    if form.submit_name:
        payload[form.submit_name] = "Log In"
    elif form.event_target:
        payload["__EVENTTARGET"] = form.event_target
        payload["__EVENTARGUMENT"] = ""
    else:
        payload[DEFAULT_SUBMIT] = "Log In"
    return payload


def looks_authenticated(html: str) -> bool:
    """The pricing page mentions cents/kWh, $/MWh or a forecast; the login page does not."""
    lower = html.lower()
    return any(marker in lower for marker in ("¢ / kwh", "&cent; / kwh", "c / kwh", "/mwh", "forecast"))


def _is_cents_header(text: str) -> bool:
    t = re.sub(r"\s+", " ", text.lower())
    return ("¢" in t and "kwh" in t) or "c / kwh" in t or "c/kwh" in t


def _extremes(values: List[float]) -> Optional[Tuple[float, float]]:
    if not values:
        return None
    return round(min(values), 3), round(max(values), 3)


def _find_price_table(soup: BeautifulSoup) -> Optional[Tag]:
    tables = soup.find_all("table")
    for table in reversed(tables):
        header = " ".join(th.get_text(" ", strip=True) for th in table.find_all("th")).lower()
        if "¢" in header and "kwh" in header:
            return table
    for table in reversed(tables):
        text = table.get_text(" ", strip=True).lower()
        if "/mwh" in text and "kwh" in text:
            return table
    return None


def parse_table_extremes(html: str) -> Optional[Tuple[float, float]]:
    """Min/max of the cents/kWh column of the pricing table."""
    table = _find_price_table(BeautifulSoup(html, "html.parser"))
    if table is None:
        return None

    rows = table.find_all("tr")
    cents_idx = None
    for tr in rows:
        headers = [th.get_text(" ", strip=True) for th in tr.find_all("th")]
        for j, text in enumerate(headers):
            if _is_cents_header(text):
                cents_idx = j
        if cents_idx is not None:
            break

    values = []
    for tr in rows:
        cells = [td.get_text(strip=True) for td in tr.find_all("td")]
        if not cells:
            continue
        cell = cells[cents_idx] if cents_idx is not None and cents_idx < len(cells) else cells[-1]
        if not re.search(r"\d", cell):
            continue
        try:
            value = float(re.sub(r"[^\d.]", "", cell))
        except ValueError:
            continue
        if 0 < value <= 100:
            values.append(value)
    return _extremes(values)


def parse_loose_extremes(html: str) -> Optional[Tuple[float, float]]:
    """Any 3-decimal number in (0, 100] anywhere on the page."""
    values = [float(m) for m in LOOSE_PRICE_RE.findall(html)]
    return _extremes([v for v in values if 0 < v <= 100])


# ============================================================================
# Provider
# ============================================================================

class MeagPriceSource(PriceSource):
    """Daily min/max wholesale price from the MEAG Power B2B portal"""

    source_id = "meagpower"

    def __init__(self, settings: PriceSettings):
        self.settings = settings
        base = settings.base_url.rstrip("/")
        self.login_url = f"{base}/login.aspx?ReturnUrl=%2fpricing.aspx"
        self.pricing_url = f"{base}/pricing.aspx"

    async def _load_pricing_page(self, session: aiohttp.ClientSession) -> str:
        async with session.get(self.login_url) as response:
            login_html = await response.text()

        form = parse_login_form(login_html)
        action = urljoin(self.login_url, form.action) if form.action else self.login_url
        logger.debug("MEAG login form: user=%s pass=%s action=%s", form.user_field, form.pass_field, action)

        payload = build_login_payload(form, self.settings.username, self.settings.password)
        async with session.post(action, data=payload, headers={"Referer": self.login_url}) as response:
            await response.read()

        async with session.get(self.pricing_url) as response:
            if response.status != 200:
                raise PriceSourceError(f"Pricing page HTTP {response.status}")
            return await response.text()

    async def fetch_price_extremes(self) -> PriceExtremes:
        if not self.settings.username or not self.settings.password:
            raise PriceSourceError("Missing credentials: set MEAGPOWER_USER and MEAGPOWER_PASS")

        try:
            async with aiohttp.ClientSession(
                cookie_jar=aiohttp.CookieJar(),
                headers={"User-Agent": USER_AGENT},
                timeout=aiohttp.ClientTimeout(total=self.settings.timeout),
            ) as session:
                pricing_html = await self._load_pricing_page(session)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise PriceSourceError(f"MEAG portal request failed: {e}") from e

        if not looks_authenticated(pricing_html):
            raise PriceSourceError("Not authenticated (pricing page did not look like pricing)")

        extremes = parse_table_extremes(pricing_html) or parse_loose_extremes(pricing_html)
        if extremes is None:
            raise PriceSourceError("Could not locate pricing table")

        low, high = extremes
        logger.info("Power cost today: %.3f - %.3f ¢/kWh", low, high)
        return PriceExtremes(
            min_cents_kwh=low,
            max_cents_kwh=high,
            fetched_at=datetime.now(timezone.utc),
            source=self.source_id,
        )

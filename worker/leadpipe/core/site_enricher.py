"""Website crawling and contact extraction for lead enrichment."""

from __future__ import annotations

import logging
import random
import re
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set, Tuple
from urllib import robotparser
from urllib.parse import urljoin, urlparse, urlunparse

import phonenumbers
import requests
from bs4 import BeautifulSoup
from playwright.sync_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError, sync_playwright

from leadpipe.core.config import Settings, get_settings
from leadpipe.core.markdown import combine_pages, html_to_markdown

logger = logging.getLogger(__name__)

USER_AGENT = "LeadPipeBot/1.0 (+https://leadpipe.app/bot)"
REQUEST_TIMEOUT = 15
REQUEST_DELAY_RANGE = (0.5, 1.5)
MAX_PAGES_PER_DOMAIN = 8
MAX_EMAILS = 10
MAX_PHONES = 5
SOCIAL_HOSTS = {
    "linkedin": ("linkedin.com",),
    "facebook": ("facebook.com", "fb.com"),
    "instagram": ("instagram.com", "instagr.am"),
    "twitter": ("twitter.com", "x.com"),
    "youtube": ("youtube.com", "youtu.be"),
}
FOLLOW_PATH_KEYWORDS = ("contact", "about", "team", "staff", "leadership", "services", "our-story", "history")
CONTACT_KEYWORDS = ("contact", "get-in-touch", "reach-us")
ABOUT_KEYWORDS = ("about", "our-story", "history")

# TLD capped at six characters to skip asset names like v@build.version.
EMAIL_REGEX = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,6}\b", re.IGNORECASE)
PHONE_CANDIDATE_REGEX = re.compile(r"\+?\d[\d\s().\-]{6,}")
_ASSET_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp")


class PlaywrightRenderer:
    """Headless Chromium for pages that only render with JavaScript."""

    def __init__(self, timeout_ms: int = REQUEST_TIMEOUT * 1000) -> None:
        self._playwright = None
        self._browser = None
        self._timeout_ms = timeout_ms

    def _ensure_browser(self) -> None:
        if self._playwright is None:
            self._playwright = sync_playwright().start()
            self._browser = self._playwright.chromium.launch(
                headless=True,
                args=["--no-sandbox", "--disable-dev-shm-usage"],
            )

    def render(self, url: str) -> Tuple[str, str]:
        self._ensure_browser()
        page = self._browser.new_page(user_agent=USER_AGENT)
        try:
            page.goto(url, wait_until="domcontentloaded", timeout=self._timeout_ms)
            page.wait_for_load_state("networkidle", timeout=self._timeout_ms)
            return page.url, page.content()
        finally:
            page.close()

    def close(self) -> None:
        if self._browser is not None:
            self._browser.close()
            self._browser = None
        if self._playwright is not None:
            self._playwright.stop()
            self._playwright = None


def sanitize_website(raw_url: Optional[str]) -> Optional[str]:
    """Normalise raw website strings into absolute https URLs."""
    if not raw_url or not raw_url.strip():
        return None

    url = raw_url.strip()
    parsed = urlparse(url, scheme="https")
    if not parsed.netloc:
        parsed = urlparse(f"https://{url}")
    if not parsed.netloc:
        return None

    path = parsed.path or "/"
    if not path.startswith("/"):
        path = f"/{path}"
    return urlunparse(parsed._replace(path=path, fragment="", query=""))


def fetch_url(session: requests.Session, url: str, *, timeout: int = REQUEST_TIMEOUT) -> Optional[Tuple[str, BeautifulSoup]]:
    """Fetch a URL and return the final URL + soup when it is HTML content."""
    try:
        response = session.get(url, timeout=timeout, allow_redirects=True)
    except requests.RequestException as exc:
        logger.warning("Failed to fetch %s: %s", url, exc)
        return None
    if response.status_code >= 400:
        logger.info("Fetching %s returned HTTP %s", url, response.status_code)
        return None
    content_type = response.headers.get("Content-Type", "").lower()
    if "text/html" not in content_type:
        logger.debug("Skipping non-HTML content at %s (content-type=%s)", url, content_type)
        return None
    return response.url, BeautifulSoup(response.text, "html.parser")


def extract_emails(text: str) -> List[str]:
    found = {match.group(0).lower() for match in EMAIL_REGEX.finditer(text or "")}
    return sorted(email for email in found if not email.endswith(_ASSET_SUFFIXES))


def extract_phones(text: str, default_region: Optional[str] = None) -> List[str]:
    """Return E.164 phone strings parsed from text."""
    normalized: Set[str] = set()
    for raw in PHONE_CANDIDATE_REGEX.findall(text or ""):
        try:
            parsed = phonenumbers.parse(raw.strip(), default_region)
        except phonenumbers.NumberParseException:
            continue
        if phonenumbers.is_possible_number(parsed):
            normalized.add(phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164))
    return sorted(normalized)


def extract_social_links(soup: BeautifulSoup, base_url: str) -> Dict[str, List[str]]:
    results: Dict[str, Set[str]] = defaultdict(set)
    for anchor in soup.find_all("a", href=True):
        absolute = urljoin(base_url, anchor["href"].strip())
        parsed = urlparse(absolute)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            continue
        host = parsed.netloc.lower()
        for platform, hosts in SOCIAL_HOSTS.items():
            if any(host == h or host.endswith("." + h) for h in hosts):
                results[platform].add(urlunparse(("https", parsed.netloc, parsed.path.rstrip("/"), "", "", "")))
    return {platform: sorted(links) for platform, links in results.items()}


def extract_address(soup: BeautifulSoup) -> Optional[str]:
    for selector in ("[itemprop='address']", "address", ".address", "#address", "[class*='addr']"):
        for node in soup.select(selector):
            text = " ".join(node.stripped_strings)
            if len(text) >= 10:
                return text[:500]
    return None


def extract_copyright_year(text: str) -> Optional[int]:
    years = [int(y) for y in re.findall(r"(?:©|&copy;|copyright)\s*(?:\d{4}\s*[-–]\s*)?(\d{4})", text or "", re.IGNORECASE)]
    return max(years) if years else None


def _needs_js_render(soup: BeautifulSoup) -> bool:
    if len(soup.get_text(" ", strip=True)) > 200:
        return False
    if soup.find(attrs={"data-page": True}):
        return True
    root = soup.find(id=re.compile("(app|root|__next)", re.IGNORECASE))
    return bool(root is not None and not root.get_text(strip=True))


def _summarize_text(text: str, *, max_length: int = 320) -> Optional[str]:
    cleaned = re.sub(r"\s+", " ", text or "").strip()
    if not cleaned:
        return None
    if len(cleaned) <= max_length:
        return cleaned
    truncated = cleaned[: max_length + 1]
    last_space = truncated.rfind(" ")
    if last_space > 0:
        truncated = truncated[:last_space]
    return f"{truncated.rstrip('. ')}..."


class SiteEnricher:
    """Crawl a handful of same-domain pages and extract lead facts.

    ``enrich()`` returns a JSON-serialisable dict with the structured fields
    plus a combined ``markdown`` rendering of every page visited. Pages are
    fetched with requests first; JavaScript-only pages fall back to headless
    Chromium when ``enrich_use_js_renderer`` is on.
    """

    def __init__(
        self,
        website: str,
        *,
        settings: Optional[Settings] = None,
        session: Optional[requests.Session] = None,
        max_pages: int = MAX_PAGES_PER_DOMAIN,
        renderer: Optional[PlaywrightRenderer] = None,
    ) -> None:
        sanitized = sanitize_website(website)
        if not sanitized:
            raise ValueError("A valid website URL is required for enrichment")

        self.root_url = sanitized
        parsed = urlparse(self.root_url)
        self.domain = parsed.netloc.lower().removeprefix("www.")
        self.settings = settings or get_settings()
        self.max_pages = max_pages
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)
        self.session.headers.setdefault("Accept", "text/html,application/xhtml+xml")
        self.session.headers.setdefault("Accept-Language", "en-US,en;q=0.9")
        self.use_js_renderer = self.settings.enrich_use_js_renderer
        self._js_renderer = renderer
        self._robots = self._load_robot_rules(parsed)

    def _load_robot_rules(self, parsed_url) -> Optional[robotparser.RobotFileParser]:
        robots_url = urlunparse((parsed_url.scheme, parsed_url.netloc, "/robots.txt", "", "", ""))
        try:
            response = self.session.get(robots_url, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as exc:
            logger.debug("Unable to read robots.txt from %s: %s", robots_url, exc)
            return None
        if response.status_code >= 400:
            return None
        rules = robotparser.RobotFileParser()
        rules.parse(response.text.splitlines())
        return rules

    def _is_same_domain(self, url: str) -> bool:
        netloc = urlparse(url).netloc
        return not netloc or netloc.lower().removeprefix("www.") == self.domain

    def is_allowed(self, url: str) -> bool:
        if not self._robots:
            return True
        return self._robots.can_fetch(USER_AGENT, url)

    def _follow_candidates(self, base_url: str, soup: BeautifulSoup) -> List[str]:
        seen: Set[str] = set()
        found: List[str] = []
        for anchor in soup.find_all("a", href=True):
            absolute = urljoin(base_url, anchor["href"].strip())
            if not self._is_same_domain(absolute):
                continue
            parsed = urlparse(absolute)
            if parsed.scheme not in ("http", "https"):
                continue
            if any(keyword in parsed.path.lower() for keyword in FOLLOW_PATH_KEYWORDS):
                candidate = urlunparse((parsed.scheme, parsed.netloc, parsed.path, "", "", ""))
                if candidate not in seen:
                    seen.add(candidate)
                    found.append(candidate)
        return found

    def _find_contact_page(self, page_url: str, soup: BeautifulSoup) -> Optional[str]:
        if any(keyword in urlparse(page_url).path.lower() for keyword in CONTACT_KEYWORDS):
            return page_url
        for anchor in soup.find_all("a", href=True):
            candidate = urljoin(page_url, anchor["href"])
            text = anchor.get_text(" ", strip=True).lower()
            if self._is_same_domain(candidate) and ("contact" in text or "contact" in urlparse(candidate).path.lower()):
                return candidate
        return None

    def _mailto_and_tel(self, soup: BeautifulSoup) -> Tuple[Set[str], Set[str]]:
        emails: Set[str] = set()
        phones: Set[str] = set()
        for anchor in soup.find_all("a", href=True):
            href = anchor["href"].strip()
            scheme, _, value = href.partition(":")
            if scheme.lower() == "mailto" and value:
                emails.add(value.split("?")[0].strip().lower())
            elif scheme.lower() == "tel" and value:
                phones.update(extract_phones(value, self.settings.default_phone_region))
        return emails, phones

    def _fetch_with_js(self, url: str) -> Optional[Tuple[str, BeautifulSoup]]:
        if not self.use_js_renderer:
            return None
        if self._js_renderer is None:
            self._js_renderer = PlaywrightRenderer()
        try:
            final_url, html = self._js_renderer.render(url)
        except PlaywrightTimeoutError:
            logger.warning("Headless browser timed out on %s", url)
            return None
        except PlaywrightError as exc:
            logger.warning("Headless browser failed on %s: %s", url, exc)
            return None
        return final_url, BeautifulSoup(html, "html.parser")

    def _fetch(self, url: str) -> Tuple[Optional[Tuple[str, BeautifulSoup]], str]:
        fetched = fetch_url(self.session, url)
        if fetched is None:
            rendered = self._fetch_with_js(url)
            return rendered, "browser"
        if self.use_js_renderer and _needs_js_render(fetched[1]):
            rendered = self._fetch_with_js(fetched[0])
            if rendered is not None:
                return rendered, "browser"
        return fetched, "http"

    def enrich(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "website": self.root_url,
            "pages_crawled": 0,
            "blocked_by_robots": False,
            "methods": [],
            "emails": [],
            "phones": [],
            "socials": {},
            "address": None,
            "contact_page_url": None,
            "about_summary": None,
            "copyright_year": None,
            "markdown": "",
        }
        if not self.is_allowed(self.root_url):
            logger.info("robots.txt disallows %s; skipping enrichment", self.domain)
            result["blocked_by_robots"] = True
            return result

        queue: List[str] = [self.root_url]
        visited: Set[str] = set()
        emails: Set[str] = set()
        phones: Set[str] = set()
        socials: Dict[str, Set[str]] = defaultdict(set)
        methods: Set[str] = set()
        rendered_pages: List[Tuple[str, str, str]] = []

        while queue and len(visited) < self.max_pages:
            url = queue.pop(0)
            if url in visited or not self._is_same_domain(url) or not self.is_allowed(url):
                continue
            if visited:
                time.sleep(random.uniform(*REQUEST_DELAY_RANGE))

            fetched, method = self._fetch(url)
            if fetched is None:
                visited.add(url)
                continue
            final_url, soup = fetched
            visited.update({url, final_url})
            methods.add(method)

            text = soup.get_text(" ", strip=True)
            mail_links, tel_links = self._mailto_and_tel(soup)
            emails.update(extract_emails(text))
            emails.update(mail_links)
            phones.update(extract_phones(text, self.settings.default_phone_region))
            phones.update(tel_links)
            for platform, links in extract_social_links(soup, final_url).items():
                socials[platform].update(links)

            result["address"] = result["address"] or extract_address(soup)
            result["contact_page_url"] = result["contact_page_url"] or self._find_contact_page(final_url, soup)
            if not result["about_summary"] and any(k in urlparse(final_url).path.lower() for k in ABOUT_KEYWORDS):
                result["about_summary"] = _summarize_text(text)
            year = extract_copyright_year(text)
            if year and (result["copyright_year"] is None or year > result["copyright_year"]):
                result["copyright_year"] = year

            title = soup.title.get_text(strip=True) if soup.title else ""
            rendered_pages.append((final_url, title, html_to_markdown(soup)))

            for candidate in self._follow_candidates(final_url, soup):
                if candidate not in visited and candidate not in queue:
                    queue.append(candidate)

        result.update(
            pages_crawled=len(rendered_pages),
            methods=sorted(methods),
            emails=sorted(emails)[:MAX_EMAILS],
            phones=sorted(phones)[:MAX_PHONES],
            socials={platform: sorted(links) for platform, links in socials.items() if links},
            markdown=combine_pages(rendered_pages),
        )
        return result

    def close(self) -> None:
        self.session.close()
        if self._js_renderer is not None:
            self._js_renderer.close()
            self._js_renderer = None

    def __enter__(self) -> "SiteEnricher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

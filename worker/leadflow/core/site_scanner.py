"""Website inspection for booking, chat and contact signals."""

from __future__ import annotations

import logging
import random
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set, Tuple
from urllib import robotparser
from urllib.parse import urljoin, urlparse, urlunparse

import requests
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

USER_AGENT = "LeadflowBot/1.0 (+https://leadflow.app/bot)"
REQUEST_TIMEOUT = 10
REQUEST_DELAY_RANGE = (1.0, 2.0)
MAX_PAGES_PER_DOMAIN = 3
SOCIAL_HOSTS = {
    "linkedin": ("linkedin.com",),
    "facebook": ("facebook.com", "fb.com"),
    "instagram": ("instagram.com", "instagr.am"),
    "youtube": ("youtube.com", "youtu.be"),
    "tiktok": ("tiktok.com",),
    "yelp": ("yelp.com",),
}
BOOKING_PROVIDERS = {
    "calendly": ("calendly.com",),
    "acuity": ("acuityscheduling.com",),
    "zocdoc": ("zocdoc.com",),
    "localmed": ("localmed.com",),
    "nexhealth": ("nexhealth.com",),
    "opentable": ("opentable.com",),
    "square": ("squareup.com/appointments", "square.site/book"),
    "booksy": ("booksy.com",),
    "housecall_pro": ("housecallpro.com",),
    "servicetitan": ("servicetitan.com",),
}
BOOKING_PHRASES = (
    "book online",
    "book now",
    "book an appointment",
    "schedule online",
    "schedule an appointment",
    "request an appointment",
)
CHAT_PROVIDERS = {
    "intercom": ("widget.intercom.io", "js.intercomcdn.com"),
    "drift": ("js.driftt.com",),
    "tawk": ("embed.tawk.to",),
    "livechat": ("cdn.livechatinc.com",),
    "zendesk": ("static.zdassets.com",),
    "crisp": ("client.crisp.chat",),
    "hubspot": ("js.usemessages.com",),
    "tidio": ("code.tidio.co",),
    "podium": ("connect.podium.com",),
}
CANDIDATE_PATHS = (
    "/contact",
    "/contact-us",
    "/book",
    "/booking",
    "/appointment",
    "/schedule",
)
CONTACT_KEYWORDS = ("contact", "appointment", "quote")


def sanitize_website(raw_url: str) -> Optional[str]:
    """Normalise raw website strings into absolute https URLs."""

    if not raw_url:
        return None

    url = raw_url.strip()
    if not url:
        return None

    parsed = urlparse(url, scheme="https")
    if not parsed.netloc:
        parsed = urlparse(f"https://{url}")

    if not parsed.netloc:
        return None

    normalized_path = parsed.path or "/"
    if not normalized_path.startswith("/"):
        normalized_path = f"/{normalized_path}"

    normalized = parsed._replace(path=normalized_path, fragment="", query="")
    return urlunparse(normalized)


def fetch_url(session: requests.Session, url: str, *, timeout: int = REQUEST_TIMEOUT) -> Optional[Tuple[str, str]]:
    """Fetch a URL and return the final URL + raw HTML when it is HTML content."""

    try:
        response = session.get(url, timeout=timeout, allow_redirects=True)
        response.raise_for_status()
    except requests.RequestException as exc:
        logger.warning("Failed to fetch %s: %s", url, exc)
        return None

    content_type = response.headers.get("Content-Type", "").lower()
    if "text/html" not in content_type:
        logger.debug("Skipping non-HTML content at %s (content-type=%s)", url, content_type)
        return None
    return response.url, response.text


def extract_social_links(soup: BeautifulSoup, base_url: str) -> Dict[str, List[str]]:
    """Collect platform-specific social URLs present in anchor tags."""

    results: Dict[str, Set[str]] = {platform: set() for platform in SOCIAL_HOSTS}
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href:
            continue

        absolute = urljoin(base_url, href)
        parsed = urlparse(absolute)
        if parsed.scheme != "https" or not parsed.netloc:
            continue

        host = parsed.netloc.lower()
        for platform, allowed_hosts in SOCIAL_HOSTS.items():
            if any(allowed in host for allowed in allowed_hosts):
                normalized = urlunparse((parsed.scheme, parsed.netloc, parsed.path.rstrip("/"), "", "", ""))
                results[platform].add(normalized)

    return {platform: sorted(links) for platform, links in results.items() if links}


def _match_provider(html: str, providers: Dict[str, Tuple[str, ...]]) -> Optional[str]:
    lowered = html.lower()
    for provider, markers in providers.items():
        if any(marker in lowered for marker in markers):
            return provider
    return None


def detect_booking(html: str, soup: BeautifulSoup) -> Optional[str]:
    """Return the booking provider (or ``"generic"``) when the page offers online booking."""
    provider = _match_provider(html, BOOKING_PROVIDERS)
    if provider:
        return provider

    for node in soup.find_all(["a", "button"]):
        text = node.get_text(" ", strip=True).lower()
        if any(phrase in text for phrase in BOOKING_PHRASES):
            return "generic"
    return None


def detect_chat_widget(html: str) -> Optional[str]:
    return _match_provider(html, CHAT_PROVIDERS)


class SiteScanner:
    """Crawl a few pages of a business website and report what it offers."""

    def __init__(
        self,
        website: str,
        *,
        session: Optional[requests.Session] = None,
        max_pages: int = MAX_PAGES_PER_DOMAIN,
    ) -> None:
        sanitized = sanitize_website(website)
        if not sanitized:
            raise ValueError("A valid website URL is required for scanning")

        self.root_url = sanitized
        parsed = urlparse(self.root_url)
        self.domain = parsed.netloc.lower().removeprefix("www.")

        self.max_pages = max_pages
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)
        self.session.headers.setdefault("Accept", "text/html,application/xhtml+xml")
        self.session.headers.setdefault("Accept-Language", "en-US,en;q=0.9")

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

        parser_obj = robotparser.RobotFileParser()
        parser_obj.set_url(robots_url)
        parser_obj.parse(response.text.splitlines())
        return parser_obj

    def _is_same_domain(self, url: str) -> bool:
        parsed = urlparse(url)
        if not parsed.netloc:
            return True  # relative URLs inherit domain
        return parsed.netloc.lower().removeprefix("www.") == self.domain

    def _is_allowed_by_robots(self, url: str) -> bool:
        if not self._robots:
            return True
        allowed = self._robots.can_fetch(USER_AGENT, url)
        if not allowed:
            logger.info("Robots.txt disallows %s", url)
        return allowed

    def _build_candidate_urls(self, base_url: str, soup: BeautifulSoup) -> List[str]:
        unique: List[str] = []
        for anchor in soup.find_all("a", href=True):
            href = anchor["href"].strip()
            if not href:
                continue
            absolute = urljoin(base_url, href)
            if not self._is_same_domain(absolute):
                continue
            parsed = urlparse(absolute)
            if any(candidate in parsed.path.lower() for candidate in CANDIDATE_PATHS):
                normalized = urlunparse((parsed.scheme, parsed.netloc, parsed.path, "", "", ""))
                if normalized not in unique:
                    unique.append(normalized)
        return unique

    def _find_contact_form(self, page_url: str, soup: BeautifulSoup) -> Optional[str]:
        for form in soup.find_all("form"):
            classes = form.get("class", [])
            descriptor = " ".join(
                filter(
                    None,
                    [
                        form.get("id", ""),
                        form.get("name", ""),
                        " ".join(classes) if isinstance(classes, list) else classes,
                        form.get("action", ""),
                    ],
                )
            ).lower()
            has_message_field = form.find("textarea") is not None
            if has_message_field or any(keyword in descriptor for keyword in CONTACT_KEYWORDS):
                action = (form.get("action") or "").strip()
                return urljoin(page_url, action) if action else page_url
        return None

    def scan(self) -> Dict[str, Any]:
        visit_queue: List[str] = [self.root_url]
        visited: Set[str] = set()
        socials: Dict[str, Set[str]] = defaultdict(set)
        booking: Optional[Dict[str, str]] = None
        chat: Optional[Dict[str, str]] = None
        contact_form_url: Optional[str] = None
        delay_needed = False

        while visit_queue and len(visited) < self.max_pages:
            current_url = visit_queue.pop(0)
            if not self._is_same_domain(current_url) or not self._is_allowed_by_robots(current_url):
                continue

            if delay_needed:
                time.sleep(random.uniform(*REQUEST_DELAY_RANGE))

            fetched = fetch_url(self.session, current_url)
            delay_needed = True
            if not fetched:
                continue

            final_url, html = fetched
            if final_url in visited:
                continue
            visited.add(final_url)
            soup = BeautifulSoup(html, "html.parser")

            if booking is None:
                provider = detect_booking(html, soup)
                if provider:
                    booking = {"provider": provider, "evidence_url": final_url}
            if chat is None:
                provider = detect_chat_widget(html)
                if provider:
                    chat = {"provider": provider, "evidence_url": final_url}
            if contact_form_url is None:
                contact_form_url = self._find_contact_form(final_url, soup)

            for platform, links in extract_social_links(soup, final_url).items():
                socials[platform].update(links)

            for candidate in self._build_candidate_urls(final_url, soup):
                if len(visited) + len(visit_queue) >= self.max_pages:
                    break
                if candidate not in visited and candidate not in visit_queue:
                    visit_queue.append(candidate)

        return {
            "website": self.root_url,
            "pages_crawled": len(visited),
            "booking": booking,
            "chat": chat,
            "contact_form_url": contact_form_url,
            "socials": {platform: sorted(links) for platform, links in socials.items() if links},
        }

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "SiteScanner":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        self.close()

"""BOM Queensland flood warnings feed."""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Literal, Optional

import httpx

from config import settings
from providers.base import SourceClient
from providers.payloads import RawWarning, WarningsPayload
from services.readings import SourceResult, isoformat, parse_timestamp, utc_now
from services.sites import RIVER_SYSTEM_NAMES, Site, get_site

logger = logging.getLogger("gauge.hub.providers.warnings")

WarningLevel = Literal["minor", "moderate", "major"]

FITZROY_PRODUCTS = frozenset({"IDQ20825", "IDQ20800", "IDQ20705"})
FITZROY_AREAS = (
    "fitzroy",
    "mackenzie",
    "isaac",
    "nogoa",
    "dawson",
    "comet",
    "connors",
    "clermont",
    "emerald",
    "rockhampton",
    "central queensland",
    "central highlands",
)
KEY_PHRASES = (
    "flooding",
    "flood warning",
    "river level",
    "water level",
    "rising",
    "falling",
    "expected",
    "forecast",
    "peak",
)
WARNING_BLOCKS = {"amoc", "warning", "alert"}
PRODUCT_PATTERN = re.compile(r"IDQ\d+")
TAG_PATTERN = re.compile(r"<[^>]*>")
WHITESPACE_PATTERN = re.compile(r"\s+")
SUMMARY_FALLBACK = "Flood warning in effect. Check BOM for details."
WARNINGS_PAGE = "http://www.bom.gov.au/qld/flood/"
SUMMARY_LIMIT = 200


@dataclass(frozen=True, slots=True)
class FloodWarning:
    id: str
    title: str
    area: str
    level: WarningLevel
    issue_time: datetime
    summary: str
    product_id: str = ""
    phase: str = "active"
    expire_time: Optional[datetime] = None
    url: str = WARNINGS_PAGE

    @property
    def severe(self) -> bool:
        return self.level in {"moderate", "major"}

    def as_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "area": self.area,
            "level": self.level,
            "issue_time": isoformat(self.issue_time),
            "expire_time": isoformat(self.expire_time) if self.expire_time else None,
            "summary": self.summary,
            "product_id": self.product_id,
            "phase": self.phase,
            "url": self.url,
        }


def _local_name(tag: Any) -> str:
    return tag.rsplit("}", 1)[-1].lower() if isinstance(tag, str) else ""


def _text_of(element: ET.Element) -> str:
    return WHITESPACE_PATTERN.sub(" ", " ".join(element.itertext())).strip()


def _field(element: ET.Element, *names: str) -> Optional[str]:
    wanted = [name.lower() for name in names]
    for name in wanted:
        for node in element.iter():
            if node is not element and _local_name(node.tag) == name:
                value = _text_of(node)
                if value:
                    return value
        for key, value in element.attrib.items():
            if _local_name(key) == name and value.strip():
                return value.strip()
    return None


def parse_warnings(text: str) -> WarningsPayload:
    """Extract warning records from amoc/warning/alert blocks and CAP ``info`` sections."""
    root = ET.fromstring(text)
    document_product = PRODUCT_PATTERN.search(text)
    now_iso = isoformat(utc_now())
    warnings: list[RawWarning] = []
    seen: set[str] = set()

    for block in root.iter():
        if _local_name(block.tag) not in WARNING_BLOCKS:
            continue
        identifier = _field(block, "identifier", "id") or f"warning-{len(warnings)}"
        if identifier in seen:
            continue
        body = _field(block, "description", "text", "instruction") or _text_of(block)
        product = PRODUCT_PATTERN.search(identifier) or document_product
        warnings.append(
            RawWarning(
                identifier=identifier,
                title=_field(block, "headline", "title", "event") or "Flood Warning",
                area=_field(block, "areaDesc", "area", "zone") or "Queensland",
                phase=_field(block, "phase", "status") or "active",
                issue_time=_field(block, "sent", "issue-time-utc", "effective") or now_iso,
                expire_time=_field(block, "expires", "expiry-time-utc"),
                text=body,
                product_id=product.group(0) if product else "",
            )
        )
        seen.add(identifier)

    # CAP documents carry one alert with per-language info sections.
    cap_identifier = _field(root, "identifier")
    cap_sent = _field(root, "sent")
    for info in root.iter():
        if _local_name(info.tag) != "info":
            continue
        content = _text_of(info)
        if "flood" not in content.lower():
            continue
        identifier = cap_identifier or f"cap-{len(warnings)}"
        if identifier in seen:
            continue
        warnings.append(
            RawWarning(
                identifier=identifier,
                title=_field(info, "headline", "event") or "Flood Warning",
                area=_field(info, "areaDesc") or "Queensland",
                phase="active",
                issue_time=cap_sent or now_iso,
                text=_field(info, "description") or "",
            )
        )
        seen.add(identifier)
    return WarningsPayload(warnings=warnings)


def warning_level(text: str, title: str) -> WarningLevel:
    combined = f"{title} {text}".lower()
    if "major flood" in combined:
        return "major"
    if "moderate flood" in combined:
        return "moderate"
    return "minor"


def summarize(text: str, max_length: int = SUMMARY_LIMIT) -> str:
    cleaned = WHITESPACE_PATTERN.sub(" ", TAG_PATTERN.sub(" ", text)).strip()
    sentences = [part.strip() for part in re.split(r"[.!]", cleaned) if part.strip()]
    relevant = [sentence for sentence in sentences if any(phrase in sentence.lower() for phrase in KEY_PHRASES)]
    if relevant:
        cleaned = ". ".join(relevant[:2]) + "."
    if len(cleaned) > max_length:
        cleaned = cleaned[: max_length - 3] + "..."
    return cleaned or SUMMARY_FALLBACK


def is_relevant(raw: RawWarning) -> bool:
    haystack = f"{raw.title} {raw.area} {raw.text}".lower()
    return raw.product_id in FITZROY_PRODUCTS or any(area in haystack for area in FITZROY_AREAS)


def normalize(payload: WarningsPayload) -> list[FloodWarning]:
    warnings: list[FloodWarning] = []
    for raw in payload.warnings:
        if not is_relevant(raw):
            continue
        warnings.append(
            FloodWarning(
                id=raw.identifier,
                title=raw.title,
                area=raw.area,
                level=warning_level(raw.text, raw.title),
                issue_time=parse_timestamp(raw.issue_time) or utc_now(),
                expire_time=parse_timestamp(raw.expire_time),
                summary=summarize(raw.text),
                product_id=raw.product_id,
                phase=raw.phase,
            )
        )
    warnings.sort(key=lambda warning: warning.issue_time, reverse=True)
    return warnings


def _site_keywords(site: Site) -> tuple[str, ...]:
    return (
        site.stream.lower(),
        site.river_system,
        RIVER_SYSTEM_NAMES[site.river_system].lower(),
    )


def warnings_for_site(site: Site, warnings: Iterable[FloodWarning]) -> list[FloodWarning]:
    keywords = _site_keywords(site)
    matched = []
    for warning in warnings:
        haystack = f"{warning.title} {warning.area} {warning.summary}".lower()
        if any(keyword in haystack for keyword in keywords):
            matched.append(warning)
    return matched


class WarningsClient(SourceClient[list[FloodWarning]]):
    name = "bom-warnings"
    accept = "application/xml, text/xml, */*"

    def __init__(
        self,
        *,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(timeout=timeout or settings.warnings_timeout_seconds, client=client, **kwargs)
        self._url = url or settings.bom_warnings_url

    async def _feed(self) -> list[FloodWarning]:
        response = await self._get(self._url)
        return normalize(parse_warnings(response.text))

    async def fetch_all(self) -> SourceResult[list[FloodWarning]]:
        return await self._guarded("feed", self._feed)

    async def _fetch(self, site_id: str) -> Optional[list[FloodWarning]]:
        site = get_site(site_id)
        return warnings_for_site(site, await self._feed())

    async def fetch_batch(self, site_ids: Iterable[str]) -> dict[str, SourceResult[list[FloodWarning]]]:
        sites = [get_site(site_id) for site_id in dict.fromkeys(site_ids)]
        feed = await self.fetch_all()
        if not feed.ok or feed.value is None:
            return {site.id: SourceResult.failure(feed.reason or "no data") for site in sites}
        return {site.id: SourceResult.success(warnings_for_site(site, feed.value)) for site in sites}

    async def _probe(self) -> bool:
        client = await self._get_client()
        response = await client.head(self._url)
        return response.is_success


__all__ = [
    "FloodWarning",
    "WarningsClient",
    "is_relevant",
    "normalize",
    "parse_warnings",
    "summarize",
    "warning_level",
    "warnings_for_site",
]

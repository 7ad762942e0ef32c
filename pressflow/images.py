"""
Image acquisition stage
=======================

Fills a cover slot and up to five inline slots for an article. One
``ImageAcquirer`` serves two strategies:

    SEQUENTIAL     Slot by slot. Each slot tries its sources in preference
                   order (AI generation and/or stock search) and records a
                   failure when none succeeds.
    PARALLEL_RANK  One AI generation task plus one stock-search task per
                   query run concurrently under an overall timeout. Each
                   search asks every stock handler and pools the results.
                   Every candidate is scored; the best becomes the cover
                   and the next ones fill inline slots.

Missing images never fail the run: ``GeneratedImages.failures`` lists the
slots that could not be filled and the article is published without them.

Usage:
    from pressflow.images import ImageAcquirer, ImageStrategy

    acquirer = ImageAcquirer(invoker, strategy=ImageStrategy.PARALLEL_RANK)
    images = await acquirer.acquire(content.title, campaign, content.body)
    print(images.cover, images.failed_slots)
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from html import unescape
from typing import Any, Dict, List, Optional

from pressflow.config import Campaign
from pressflow.providers import Capability, FallbackInvoker, InvokeRequest

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("pressflow.images")
if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)
    logger.setLevel(logging.INFO)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FANOUT_TIMEOUT = 45.0
AI_CANDIDATE_SCORE = 85
MAX_SECTION_QUERIES = 3
ALL_SOURCES_FAILED = "All image sources failed"
AI_IMAGE_PROVIDERS = frozenset({"openai", "dalle", "gemini", "stability"})


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ImageStrategy(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL_RANK = "parallel_rank"


class ImageSlot(str, Enum):
    COVER = "cover"
    AFTER_INTRO = "after-intro"
    AFTER_H2 = "after-h2"
    BEFORE_CONCLUSION = "before-conclusion"


INLINE_POSITIONS = [
    ImageSlot.AFTER_INTRO,
    ImageSlot.AFTER_H2,
    ImageSlot.AFTER_H2,
    ImageSlot.AFTER_H2,
    ImageSlot.BEFORE_CONCLUSION,
]


class MediaSource(str, Enum):
    AI = "ai"
    SEARCH = "search"


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass
class ImageRef:
    url: str
    alt: str = ""
    slot: str = ImageSlot.COVER.value
    source: str = ""
    score: int = 0
    photographer: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ImageFailure:
    slot: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GeneratedImages:
    cover: Optional[ImageRef] = None
    inline: List[ImageRef] = field(default_factory=list)
    failures: List[ImageFailure] = field(default_factory=list)

    @property
    def failed_slots(self) -> List[str]:
        return [f.slot for f in self.failures]

    @property
    def count(self) -> int:
        return len(self.inline) + (1 if self.cover else 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cover": self.cover.to_dict() if self.cover else None,
            "inline": [i.to_dict() for i in self.inline],
            "failures": [f.to_dict() for f in self.failures],
        }


@dataclass
class ImageCandidate:
    url: str
    alt: str = ""
    source: str = ""
    score: int = 0
    width: int = 0
    height: int = 0
    photographer: str = ""

    def to_ref(self, slot: str) -> ImageRef:
        return ImageRef(
            url=self.url, alt=self.alt, slot=slot, source=self.source,
            score=self.score, photographer=self.photographer,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def build_image_prompt(topic: str) -> str:
    return (
        f"Professional editorial photograph illustrating: {topic}. "
        "Natural lighting, high detail, realistic style. "
        "No text, captions, logos or watermarks."
    )


def extract_section_titles(html: Optional[str]) -> List[str]:
    """Plain-text H2 titles in document order."""
    if not html:
        return []
    titles = []
    for match in re.finditer(r"<h2[^>]*>(.*?)</h2>", html, re.IGNORECASE | re.DOTALL):
        text = re.sub(r"\s+", " ", unescape(re.sub(r"<[^>]+>", "", match.group(1)))).strip()
        if text:
            titles.append(text)
    return titles


def sample_section_titles(titles: List[str], count: int) -> List[str]:
    """Spread *count* picks over *titles*, skipping the first section."""
    if not titles or count <= 0:
        return []
    step = len(titles) // count if len(titles) > count else 1
    return [titles[min(1 + i * step, len(titles) - 1)] for i in range(count)]


def score_candidate(candidate: Dict[str, Any], topic: str) -> int:
    """
    Score a stock-search result for relevance and quality.

    Base 50; +15 at width >= 1200 and another +10 at >= 1920; +5 for each
    topic word found in the alt text or description; +5 when a
    photographer is credited. Capped at 100.
    """
    score = 50
    width = candidate.get("width") or 0
    if isinstance(width, (int, float)):
        if width >= 1200:
            score += 15
        if width >= 1920:
            score += 10

    alt = str(candidate.get("alt") or candidate.get("description") or "").lower()
    if alt:
        score += 5 * sum(1 for word in topic.lower().split() if word in alt)

    if candidate.get("photographer"):
        score += 5
    return min(score, 100)


def detect_source(candidate: Dict[str, Any]) -> str:
    if candidate.get("source"):
        return str(candidate["source"])
    url = str(candidate.get("url", "")).lower()
    for name in ("unsplash", "pexels", "brave", "serper"):
        if name in url:
            return name
    return "web"


def source_order(campaign: Campaign) -> List[MediaSource]:
    """Sources to try per slot, from the campaign's media preference."""
    pref = campaign.media_source_preference
    if pref == "ai":
        return [MediaSource.AI]
    if pref == "search":
        return [MediaSource.SEARCH]
    if campaign.image_provider in AI_IMAGE_PROVIDERS:
        return [MediaSource.AI, MediaSource.SEARCH]
    return [MediaSource.SEARCH, MediaSource.AI]


# ---------------------------------------------------------------------------
# Acquirer
# ---------------------------------------------------------------------------


class ImageAcquirer:
    """
    Acquire cover and inline images for an article.

    Parameters
    ----------
    invoker : FallbackInvoker
        Serves the ``images`` and ``search-images`` capabilities.
    strategy : ImageStrategy, optional
        Overrides the campaign's ``image_strategy`` when given.
    fanout_timeout : float
        Overall deadline (seconds) for the parallel fan-out.
    """

    def __init__(
        self,
        invoker: FallbackInvoker,
        strategy: Optional[ImageStrategy] = None,
        fanout_timeout: float = FANOUT_TIMEOUT,
    ):
        self.invoker = invoker
        self.strategy = ImageStrategy(strategy) if strategy else None
        self.fanout_timeout = fanout_timeout

    async def acquire(
        self,
        title: str,
        campaign: Campaign,
        content_html: Optional[str] = None,
    ) -> GeneratedImages:
        """Fill the campaign's image slots. Never raises for missing images."""
        strategy = self.strategy or ImageStrategy(campaign.image_strategy)
        if strategy == ImageStrategy.PARALLEL_RANK:
            images = await self._acquire_parallel(title, campaign, content_html)
        else:
            images = await self._acquire_sequential(title, campaign, content_html)

        logger.info(
            "Images for %r (%s): cover=%s inline=%d failed=%s",
            title[:60], strategy.value, bool(images.cover), len(images.inline),
            images.failed_slots or "none",
        )
        return images

    # -- Sequential ----------------------------------------------------------

    async def _acquire_sequential(
        self, title: str, campaign: Campaign, content_html: Optional[str]
    ) -> GeneratedImages:
        images = GeneratedImages()
        sources = source_order(campaign)

        if "cover" in campaign.image_placements:
            ref = await self._fill_slot(title, ImageSlot.COVER.value, sources, campaign)
            if ref:
                images.cover = ref
            else:
                images.failures.append(ImageFailure(slot="cover", error=ALL_SOURCES_FAILED))

        inline_count = campaign.inline_slots
        sections = sample_section_titles(extract_section_titles(content_html), inline_count)
        for i in range(inline_count):
            query = sections[i] if i < len(sections) else f"{title} - illustration {i + 1}"
            slot = INLINE_POSITIONS[i].value
            ref = await self._fill_slot(query, slot, sources, campaign)
            if ref:
                images.inline.append(ref)
            else:
                images.failures.append(ImageFailure(slot=f"inline-{i + 1}", error=ALL_SOURCES_FAILED))
        return images

    async def _fill_slot(
        self, query: str, slot: str, sources: List[MediaSource], campaign: Campaign
    ) -> Optional[ImageRef]:
        for source in sources:
            if source == MediaSource.AI:
                candidate = await self._generate_ai(query, campaign)
                if candidate:
                    return candidate.to_ref(slot)
            else:
                candidates = await self._search(query, campaign)
                if candidates:
                    best = max(candidates, key=lambda c: c.score)
                    return best.to_ref(slot)
            logger.debug("Image source %s failed for slot %s (%r)", source.value, slot, query[:40])
        return None

    # -- Parallel ------------------------------------------------------------

    async def _acquire_parallel(
        self, title: str, campaign: Campaign, content_html: Optional[str]
    ) -> GeneratedImages:
        sources = source_order(campaign)
        sections = extract_section_titles(content_html)
        queries = [title] + sample_section_titles(sections, min(MAX_SECTION_QUERIES, len(sections)))

        tasks: List[asyncio.Task] = []
        if MediaSource.AI in sources:
            tasks.append(asyncio.ensure_future(self._generate_ai(title, campaign)))
        if MediaSource.SEARCH in sources:
            for query in queries:
                tasks.append(asyncio.ensure_future(self._search(query, campaign, aggregate=True)))

        done, pending = set(), set()
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=self.fanout_timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(
                "Image fan-out timed out after %.0fs; %d of %d task(s) cancelled",
                self.fanout_timeout, len(pending), len(tasks),
            )

        candidates: List[ImageCandidate] = []
        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                logger.warning("Image task failed: %s: %s", type(exc).__name__, exc)
                continue
            result = task.result()
            if isinstance(result, ImageCandidate):
                candidates.append(result)
            elif result:
                candidates.extend(result)

        seen = set()
        ranked: List[ImageCandidate] = []
        for candidate in sorted(candidates, key=lambda c: c.score, reverse=True):
            if candidate.url in seen:
                continue
            seen.add(candidate.url)
            ranked.append(candidate)

        images = GeneratedImages()
        idx = 0
        if "cover" in campaign.image_placements:
            if ranked:
                images.cover = ranked[0].to_ref(ImageSlot.COVER.value)
                idx = 1
            else:
                images.failures.append(ImageFailure(slot="cover", error=ALL_SOURCES_FAILED))

        for i in range(campaign.inline_slots):
            if idx < len(ranked):
                images.inline.append(ranked[idx].to_ref(INLINE_POSITIONS[i].value))
                idx += 1
            else:
                images.failures.append(ImageFailure(slot=f"inline-{i + 1}", error=ALL_SOURCES_FAILED))
        return images

    # -- Sources -------------------------------------------------------------

    async def _generate_ai(self, query: str, campaign: Campaign) -> Optional[ImageCandidate]:
        result = await self.invoker.invoke(
            Capability.IMAGES,
            InvokeRequest(prompt=build_image_prompt(query), topic=query),
            preferred=campaign.preferred_handler(Capability.IMAGES.value),
        )
        if not result.success:
            return None
        url = result.data if isinstance(result.data, str) else result.text
        return ImageCandidate(url=url, alt=query, source="ai", score=AI_CANDIDATE_SCORE)

    async def _search(self, query: str, campaign: Campaign, aggregate: bool = False) -> List[ImageCandidate]:
        request = InvokeRequest(prompt=query, topic=query)
        preferred = campaign.preferred_handler(Capability.SEARCH_IMAGES.value)
        if aggregate:
            results = await self.invoker.invoke_all(Capability.SEARCH_IMAGES, request, preferred=preferred)
        else:
            results = [await self.invoker.invoke(Capability.SEARCH_IMAGES, request, preferred=preferred)]

        candidates = []
        for result in results:
            if not result.success or not isinstance(result.data, list):
                continue
            for item in result.data:
                if not isinstance(item, dict) or not item.get("url"):
                    continue
                candidates.append(ImageCandidate(
                    url=item["url"],
                    alt=item.get("alt") or item.get("description") or query,
                    source=detect_source(item),
                    score=score_candidate(item, query),
                    width=item.get("width") or 0,
                    height=item.get("height") or 0,
                    photographer=item.get("photographer") or "",
                ))
        return candidates

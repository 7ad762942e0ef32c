"""
Content Enrichment
==================

Optional side-pipelines that run between generation and scoring:

    Rewriter        AI rewrite pass for tone and flow (``enable_rewrite``)
    LinkInjector    internal links from the campaign's phrase -> URL map (``enable_linking``)
    SchemaInjector  Article / FAQPage / HowTo JSON-LD (``enable_schema``)

Each enricher exposes ``enabled(campaign)`` and ``async apply(ctx)``. They
mutate ``ctx.content.body`` in place and raise EnrichmentError on failure;
the orchestrator records the failure and carries on with the unmodified body.

The module also holds the plain-text post-processing passes used by the
translation pipeline: ``humanize_html`` and ``optimize_readability``.

Usage:
    from pressflow.enrichment import default_enrichers, humanize_html

    enrichers = default_enrichers(invoker)
    html = humanize_html("<p>Certainly, it is important to note that ...</p>")
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from pressflow.config import Campaign, now_iso
from pressflow.generation import PipelineError, strip_code_fences, strip_tags
from pressflow.providers import Capability, FallbackInvoker, InvokeRequest

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("pressflow.enrichment")
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

MAX_INTERNAL_LINKS = 5
HEADLINE_MAX_LENGTH = 110
DESCRIPTION_MAX_LENGTH = 200
MAX_FAQ_ITEMS = 10
MAX_HOWTO_STEPS = 20
REWRITE_MIN_RATIO = 0.6
DEFAULT_AUTHOR_NAME = "Editorial Team"

_AI_PATTERNS: List[Tuple[re.Pattern, str]] = [
    # Over-formal starters
    (re.compile(r"^\s*(?:Certainly|Indeed|Absolutely|Of course)[,!]?\s*", re.IGNORECASE), ""),
    # Filler phrases
    (re.compile(r"It(?:'s| is) important to (?:note|understand|remember) that\s*", re.IGNORECASE), ""),
    (re.compile(r"It(?:'s| is) worth (?:noting|mentioning|pointing out) that\s*", re.IGNORECASE), ""),
    (re.compile(r"It should be noted that\s*", re.IGNORECASE), ""),
    # Robotic transitions
    (re.compile(r"In conclusion,\s*", re.IGNORECASE), "So, "),
    (re.compile(r"To summarize,\s*", re.IGNORECASE), "Here's the thing: "),
    (re.compile(r"To sum up,\s*", re.IGNORECASE), "Bottom line: "),
    (re.compile(r"Furthermore,\s*", re.IGNORECASE), "Plus, "),
    (re.compile(r"Moreover,\s*", re.IGNORECASE), "And "),
    (re.compile(r"Additionally,\s*", re.IGNORECASE), "Also, "),
    (re.compile(r"\bin order to\b", re.IGNORECASE), "to"),
    (re.compile(r"\butiliz(e|es|ed|ing)\b", re.IGNORECASE), r"us\1"),
]

_CONTRACTIONS: List[Tuple[re.Pattern, Callable[[re.Match], str]]] = [
    (re.compile(r"\b(it|that|what|there|here) is\b", re.IGNORECASE), lambda m: m.group(1) + "'s"),
    (re.compile(r"\b(I|you|we|they|he|she|it) will\b", re.IGNORECASE), lambda m: m.group(1) + "'ll"),
    (re.compile(r"\b(do|does|did|is|are|was|were|has|have|had|could|would|should) not\b", re.IGNORECASE),
     lambda m: m.group(1) + "n't"),
    (re.compile(r"\bcan ?not\b", re.IGNORECASE), lambda m: m.group(0)[:2] + "n't"),
]

COMPLEX_TO_SIMPLE = {
    "utilize": "use",
    "facilitate": "help",
    "subsequently": "then",
    "commence": "start",
    "terminate": "end",
    "demonstrate": "show",
    "approximately": "about",
    "sufficient": "enough",
    "numerous": "many",
    "purchase": "buy",
    "obtain": "get",
    "regarding": "about",
    "prior to": "before",
    "in order to": "to",
    "at this point in time": "now",
    "in the event that": "if",
    "due to the fact that": "because",
}

_TAG_SPLIT = re.compile(r"(<[^>]+>)")
_RAW_OPEN = re.compile(r"<(script|style|pre|code)\b", re.IGNORECASE)
_RAW_CLOSE = re.compile(r"</(script|style|pre|code)\s*>", re.IGNORECASE)
_BLOCK_OPEN = re.compile(r"<(p|li|h[1-6]|blockquote|td)\b", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class EnrichmentError(PipelineError):
    stage = "Enrichment"


# ---------------------------------------------------------------------------
# Text passes (HTML-aware)
# ---------------------------------------------------------------------------


def _map_text(html: str, func: Callable[[str, bool], str]) -> str:
    """
    Apply ``func(text, at_block_start)`` to every text run outside tags.

    Text inside script/style/pre/code elements is left untouched.
    """
    parts = _TAG_SPLIT.split(html)
    raw_depth = 0
    at_block_start = True
    out: List[str] = []
    for part in parts:
        if part.startswith("<") and part.endswith(">"):
            if _RAW_OPEN.match(part):
                raw_depth += 1
            elif _RAW_CLOSE.match(part):
                raw_depth = max(0, raw_depth - 1)
            if _BLOCK_OPEN.match(part):
                at_block_start = True
            out.append(part)
            continue
        if raw_depth or not part.strip():
            out.append(part)
            continue
        out.append(func(part, at_block_start))
        at_block_start = False
    return "".join(out)


def _capitalize_first(text: str) -> str:
    stripped = text.lstrip()
    if not stripped:
        return text
    lead = len(text) - len(stripped)
    return text[:lead] + stripped[0].upper() + stripped[1:]


def _humanize_run(text: str, at_block_start: bool) -> str:
    result = text
    for pattern, replacement in _AI_PATTERNS:
        if pattern.pattern.startswith("^") and not at_block_start:
            continue
        result = pattern.sub(replacement, result)
    for pattern, repl in _CONTRACTIONS:
        result = pattern.sub(repl, result)
    result = re.sub(r"[ \t]{2,}", " ", result)
    if at_block_start and result != text:
        result = _capitalize_first(result)
    return result


def humanize_html(html: str) -> str:
    """Strip stock AI phrasing and add contractions to article HTML."""
    return _map_text(html, _humanize_run)


def _count_syllables(word: str) -> int:
    word = re.sub(r"[^a-z]", "", word.lower())
    if len(word) <= 3:
        return 1
    count = len(re.findall(r"[aeiouy]+", word))
    if word.endswith("e") and count > 1:
        count -= 1
    if word.endswith("le") and len(word) > 2 and word[-3] not in "aeiouy":
        count += 1
    return max(1, count)


def flesch_reading_ease(text: str) -> float:
    """Flesch Reading Ease (0-100) of plain text."""
    words = text.split()
    sentences = [s for s in re.split(r"[.!?]+", text) if s.strip()]
    if not words or not sentences:
        return 0.0
    syllables = sum(_count_syllables(w) for w in words)
    score = 206.835 - 1.015 * (len(words) / len(sentences)) - 84.6 * (syllables / len(words))
    return round(max(0.0, min(100.0, score)), 1)


def _match_case(original: str, replacement: str) -> str:
    if original[:1].isupper():
        return replacement[:1].upper() + replacement[1:]
    return replacement


def simplify_language(html: str) -> str:
    def _simplify(text: str, _: bool) -> str:
        for complex_word, simple in COMPLEX_TO_SIMPLE.items():
            text = re.sub(
                r"\b" + re.escape(complex_word) + r"\b",
                lambda m, s=simple: _match_case(m.group(0), s),
                text,
                flags=re.IGNORECASE,
            )
        return text

    return _map_text(html, _simplify)


@dataclass
class ReadabilityResult:
    content: str
    score: float
    improvements: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def optimize_readability(html: str) -> ReadabilityResult:
    """Swap complex words for plain ones and report the Flesch score change."""
    improvements: List[str] = []
    optimized = simplify_language(html)
    if optimized != html:
        improvements.append("Simplified complex words")

    before = flesch_reading_ease(strip_tags(html))
    after = flesch_reading_ease(strip_tags(optimized))
    if after > before:
        improvements.append(f"Readability improved from {before} to {after}")
    return ReadabilityResult(content=optimized, score=after, improvements=improvements)


# ---------------------------------------------------------------------------
# Link injection
# ---------------------------------------------------------------------------


def inject_links(html: str, links: Dict[str, str], max_links: int = MAX_INTERNAL_LINKS) -> Tuple[str, int]:
    """
    Link the first body-text occurrence of each phrase (headings and
    existing anchors are skipped).

    URLs already linked in the body are skipped, and at most *max_links*
    links are added.

    Returns
    -------
    tuple of (html, links_added)
    """
    if not links or not html:
        return html, 0

    link_pattern = re.compile(r'<a\s[^>]*href=["\']([^"\']+)["\']', re.IGNORECASE)
    existing = {m.group(1).rstrip("/") for m in link_pattern.finditer(html)}

    injected = 0
    result = html
    for phrase, url in links.items():
        if injected >= max_links:
            break
        if not phrase or not url or url.rstrip("/") in existing:
            continue

        pattern = re.compile(
            r"(?<![</\"'])(\b" + re.escape(phrase) + r"\b)(?![^<]*>)(?![^<]*</a>)(?![^<]*</h[1-6]>)",
            re.IGNORECASE,
        )
        match = pattern.search(result)
        if not match:
            logger.debug("Anchor text %r not found in content", phrase)
            continue
        anchor = match.group(1)
        result = result[:match.start(1)] + f'<a href="{url}">{anchor}</a>' + result[match.end(1):]
        existing.add(url.rstrip("/"))
        injected += 1

    return result, injected


# ---------------------------------------------------------------------------
# Structured data
# ---------------------------------------------------------------------------


def build_article_schema(
    title: str,
    description: str,
    author_name: str = "",
    publisher_name: str = "",
    image_url: Optional[str] = None,
    date_published: Optional[str] = None,
) -> Dict[str, Any]:
    schema: Dict[str, Any] = {
        "@context": "https://schema.org",
        "@type": "Article",
        "headline": title[:HEADLINE_MAX_LENGTH],
        "description": description[:DESCRIPTION_MAX_LENGTH],
        "author": {"@type": "Person", "name": author_name or DEFAULT_AUTHOR_NAME},
        "publisher": {"@type": "Organization", "name": publisher_name or "Publisher"},
        "datePublished": date_published or now_iso(),
    }
    if image_url:
        schema["image"] = image_url
    return schema


def extract_faq(html: str) -> List[Dict[str, str]]:
    """Question/answer pairs from the FAQ section (H3 + paragraph, or bold question + text)."""
    section = re.search(
        r"<h2[^>]*>[^<]*(?:FAQ|Frequently Asked)[^<]*</h2>(.*?)(?=<h2|$)",
        html,
        re.IGNORECASE | re.DOTALL,
    )
    if not section:
        return []
    body = section.group(1)

    pairs = [
        {"question": strip_tags(q).strip(), "answer": strip_tags(a).strip()}
        for q, a in re.findall(r"<h3[^>]*>(.*?)</h3>\s*<p[^>]*>(.*?)</p>", body, re.IGNORECASE | re.DOTALL)
    ]
    if not pairs:
        pairs = [
            {"question": q.strip(), "answer": a.strip()}
            for q, a in re.findall(r"<strong>([^<]+\?)</strong>\s*([^<]+)", body, re.IGNORECASE)
        ]
    return [p for p in pairs if p["question"] and p["answer"]][:MAX_FAQ_ITEMS]


def build_faq_schema(html: str) -> Optional[Dict[str, Any]]:
    items = extract_faq(html)
    if not items:
        return None
    return {
        "@context": "https://schema.org",
        "@type": "FAQPage",
        "mainEntity": [
            {
                "@type": "Question",
                "name": item["question"],
                "acceptedAnswer": {"@type": "Answer", "text": item["answer"]},
            }
            for item in items
        ],
    }


def extract_steps(html: str) -> List[str]:
    ordered = re.search(r"<ol[^>]*>(.*?)</ol>", html, re.IGNORECASE | re.DOTALL)
    steps: List[str] = []
    if ordered:
        steps = [strip_tags(li).strip() for li in re.findall(r"<li[^>]*>(.*?)</li>", ordered.group(1), re.DOTALL)]
    if not steps:
        steps = [
            strip_tags(text).strip()
            for text in re.findall(r"<h3[^>]*>\s*(?:Step\s*)?\d+[.:]\s*(.*?)</h3>", html, re.IGNORECASE | re.DOTALL)
        ]
    return [s for s in steps if s][:MAX_HOWTO_STEPS]


def build_howto_schema(title: str, html: str) -> Optional[Dict[str, Any]]:
    steps = extract_steps(html)
    if len(steps) < 2:
        return None
    return {
        "@context": "https://schema.org",
        "@type": "HowTo",
        "name": title,
        "step": [
            {"@type": "HowToStep", "name": f"Step {i + 1}", "text": text}
            for i, text in enumerate(steps)
        ],
    }


def render_schema_scripts(schemas: List[Dict[str, Any]]) -> str:
    return "\n".join(
        f'<script type="application/ld+json">{json.dumps(s, indent=2, ensure_ascii=False)}</script>'
        for s in schemas
    )


# ---------------------------------------------------------------------------
# Enrichers
# ---------------------------------------------------------------------------


class Enricher:
    """Base class for side-pipelines. Subclasses set ``name`` and implement ``apply``."""

    name = "enricher"

    def enabled(self, campaign: Campaign) -> bool:
        return False

    async def apply(self, ctx: Any) -> None:
        raise NotImplementedError


class LinkInjector(Enricher):
    name = "linking"

    def __init__(self, max_links: int = MAX_INTERNAL_LINKS):
        self.max_links = max_links

    def enabled(self, campaign: Campaign) -> bool:
        return campaign.enable_linking

    async def apply(self, ctx: Any) -> None:
        links = ctx.campaign.internal_links
        if not links:
            logger.debug("No internal links configured for %s", ctx.campaign.campaign_id)
            return
        ctx.content.body, added = inject_links(ctx.content.body, links, self.max_links)
        logger.info("Injected %d/%d internal links [run=%s]", added, len(links), ctx.run_id[:8])


class SchemaInjector(Enricher):
    name = "schema"

    def enabled(self, campaign: Campaign) -> bool:
        return campaign.enable_schema

    async def apply(self, ctx: Any) -> None:
        content = ctx.content
        if "application/ld+json" in content.body:
            return

        author = getattr(ctx, "matched_author", None)
        cover = ctx.images.cover if getattr(ctx, "images", None) else None
        schemas = [build_article_schema(
            content.title,
            content.excerpt,
            author_name=author.name if author else "",
            publisher_name=getattr(ctx, "site_name", ""),
            image_url=cover.url if cover else None,
        )]
        faq = build_faq_schema(content.body)
        if faq:
            schemas.append(faq)
        if ctx.campaign.article_type == "how-to":
            howto = build_howto_schema(content.title, content.body)
            if howto:
                schemas.append(howto)

        content.body = content.body.rstrip() + "\n" + render_schema_scripts(schemas)
        logger.info(
            "Added %d schema block(s) [run=%s]: %s",
            len(schemas), ctx.run_id[:8], ", ".join(s["@type"] for s in schemas),
        )


class Rewriter(Enricher):
    """
    Rewrite the article body through the ``generate`` capability.

    The rewrite is rejected (EnrichmentError) when it comes back empty or
    shrinks the article below 60% of its original word count.
    """

    name = "rewrite"

    def __init__(self, invoker: FallbackInvoker, min_ratio: float = REWRITE_MIN_RATIO):
        self.invoker = invoker
        self.min_ratio = min_ratio

    def enabled(self, campaign: Campaign) -> bool:
        return campaign.enable_rewrite

    @staticmethod
    def build_prompt(body: str, campaign: Campaign) -> str:
        return (
            f"Rewrite the following HTML article so it reads naturally in a {campaign.tone} tone "
            f"for readers interested in {campaign.niche or 'this topic'}.\n\n"
            "Rules:\n"
            "- Keep every heading, list, table, link and the FAQ section\n"
            "- Keep the same facts and roughly the same length\n"
            "- Vary sentence length and cut filler phrases\n"
            "- Return ONLY the rewritten HTML, no commentary\n\n"
            f"ARTICLE:\n{body}"
        )

    async def apply(self, ctx: Any) -> None:
        original = ctx.content.body
        result = await self.invoker.invoke(
            Capability.GENERATE,
            InvokeRequest(
                prompt=self.build_prompt(original, ctx.campaign),
                max_tokens=16384,
                preferred_handler=ctx.campaign.preferred_handler(Capability.GENERATE.value),
                topic=ctx.source_item.topic,
            ),
        )
        if not result.success:
            raise EnrichmentError(f"Rewrite failed: {result.error}")

        rewritten = strip_code_fences(result.text)
        before = len(strip_tags(original).split())
        after = len(strip_tags(rewritten).split())
        if before and after < before * self.min_ratio:
            raise EnrichmentError(
                f"Rewrite rejected: {after} words vs {before} original (min ratio {self.min_ratio})"
            )
        ctx.content.body = rewritten
        logger.info(
            "Rewrote article via %s (%d -> %d words) [run=%s]",
            result.handler_used, before, after, ctx.run_id[:8],
        )


def default_enrichers(invoker: FallbackInvoker) -> List[Enricher]:
    """Enrichers in run order: rewrite, linking, schema."""
    return [Rewriter(invoker), LinkInjector(), SchemaInjector()]

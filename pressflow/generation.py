"""
Research and content generation stages
======================================

Builds the article prompt for a campaign, calls the ``generate`` capability
through the fallback invoker, and parses the returned HTML into a title,
slug, excerpt and body.

Article templates:
    guide     Sections, optional table of contents, FAQ, "Final Thoughts"
    listicle  Quick picks, numbered items with pros/cons, buying guide
    howto     Overview, materials, numbered steps, mistakes, FAQ

Usage:
    from pressflow.generation import generate_content, perform_research

    research = await perform_research(invoker, item.topic, campaign)
    content = await generate_content(invoker, item, campaign, research=research)
    print(content.title, content.slug)
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from html import unescape
from html.parser import HTMLParser
from typing import Any, Dict, List, Optional, Tuple

from pressflow.config import Campaign, SourceItem
from pressflow.providers import Capability, FallbackInvoker, InvokeRequest

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("pressflow.generation")
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

GENERATE_MAX_TOKENS = 16384
RESEARCH_MAX_TOKENS = 2000
SLUG_MAX_LENGTH = 60
EXCERPT_MAX_LENGTH = 160
WORDS_PER_MINUTE = 200

PERSONAS = {
    "guide": "an expert in this field",
    "listicle": "an expert reviewer",
    "howto": "an experienced instructor",
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PipelineError(Exception):
    """Base class for errors that stop a pipeline run."""

    stage = "Pipeline"


class ResearchError(PipelineError):
    stage = "Research"

    def __init__(self, message: str, attempted: Optional[List[str]] = None):
        self.attempted = list(attempted or [])
        super().__init__(message)


class GenerationError(PipelineError):
    """Every generate handler failed (or returned unusable output)."""

    stage = "Generation"

    def __init__(self, message: str, attempted: Optional[List[str]] = None):
        self.attempted = list(attempted or [])
        super().__init__(message)


# ---------------------------------------------------------------------------
# Enums & Data Classes
# ---------------------------------------------------------------------------


class ArticleType(str, Enum):
    GUIDE = "guide"
    LISTICLE = "listicle"
    HOWTO = "howto"


def map_article_type(article_type: str) -> ArticleType:
    """Map a campaign article type onto one of the three prompt templates."""
    if article_type == "listicle":
        return ArticleType.LISTICLE
    if article_type == "how-to":
        return ArticleType.HOWTO
    return ArticleType.GUIDE


@dataclass
class GeneratedContent:
    title: str
    body: str
    excerpt: str = ""
    slug: str = ""
    used_fallback_title: bool = False
    handler_used: Optional[str] = None
    word_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> GeneratedContent:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


# ---------------------------------------------------------------------------
# HTML parsing
# ---------------------------------------------------------------------------


class _ArticleParser(HTMLParser):
    """Collect the first h1, the excerpt paragraph, the first paragraph and headings."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.h1: Optional[str] = None
        self.excerpt: Optional[str] = None
        self.first_paragraph: Optional[str] = None
        self.headings: List[Tuple[int, str]] = []
        self._capture: Optional[str] = None
        self._is_excerpt = False
        self._buffer: List[str] = []

    def handle_starttag(self, tag: str, attrs: List[Tuple[str, Optional[str]]]) -> None:
        if self._capture is not None:
            return
        if tag in ("h1", "h2", "h3", "h4", "p"):
            self._capture = tag
            self._buffer = []
            classes = (dict(attrs).get("class") or "").split()
            self._is_excerpt = tag == "p" and "excerpt" in classes

    def handle_endtag(self, tag: str) -> None:
        if tag != self._capture:
            return
        text = re.sub(r"\s+", " ", "".join(self._buffer)).strip()
        if tag == "h1":
            if self.h1 is None and text:
                self.h1 = text
        elif tag == "p":
            if self._is_excerpt and self.excerpt is None and text:
                self.excerpt = text
            if self.first_paragraph is None and text:
                self.first_paragraph = text
        else:
            if text:
                self.headings.append((int(tag[1]), text))
        self._capture = None
        self._is_excerpt = False

    def handle_data(self, data: str) -> None:
        if self._capture is not None:
            self._buffer.append(data)


def _parse(html: str) -> _ArticleParser:
    parser = _ArticleParser()
    parser.feed(html)
    parser.close()
    return parser


def strip_code_fences(text: str) -> str:
    """Remove a wrapping ```html fence some models add despite instructions."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```[a-zA-Z]*\s*\n?", "", cleaned)
        cleaned = re.sub(r"\n?```\s*$", "", cleaned)
    return cleaned.strip()


def strip_tags(html: str) -> str:
    return re.sub(r"\s+", " ", unescape(re.sub(r"<[^>]+>", " ", html))).strip()


def slugify(text: str, max_length: int = SLUG_MAX_LENGTH) -> str:
    """Lower-case, collapse non-alphanumeric runs to one hyphen, trim, cap length."""
    slug = re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")
    return slug[:max_length].strip("-")


def make_excerpt(text: str, max_length: int = EXCERPT_MAX_LENGTH) -> str:
    text = re.sub(r"\s+", " ", text).strip()
    if len(text) <= max_length:
        return text
    return text[:max_length].rstrip() + "..."


def parse_article(html: str, fallback_title: str) -> GeneratedContent:
    """
    Recover title, slug and excerpt from generated HTML.

    Parameters
    ----------
    html : str
        Raw model output.
    fallback_title : str
        Used when the markup has no top-level heading (normally the topic).

    Returns
    -------
    GeneratedContent
        ``used_fallback_title`` is True when no heading was found.
    """
    body = strip_code_fences(html)
    parsed = _parse(body)

    title = parsed.h1
    if not title:
        md = re.search(r"^#\s+(.+)$", body, re.MULTILINE)
        title = md.group(1).strip() if md else None
    used_fallback = not title
    if used_fallback:
        logger.info("No top-level heading in generated content; using topic as title")
        title = fallback_title.strip()

    excerpt_source = parsed.excerpt or parsed.first_paragraph or ""
    return GeneratedContent(
        title=title,
        body=body,
        excerpt=make_excerpt(excerpt_source),
        slug=slugify(title),
        used_fallback_title=used_fallback,
        word_count=len(strip_tags(body).split()),
    )


def extract_headings(html: str, levels: Tuple[int, ...] = (2, 3, 4)) -> List[Dict[str, Any]]:
    """Return ``[{"level": 2, "text": "..."}]`` for h2-h4 in document order."""
    return [
        {"level": level, "text": text}
        for level, text in _parse(html).headings
        if level in levels
    ]


def estimate_reading_time(html: str) -> int:
    """Minutes to read at 200 words per minute, rounded up."""
    words = len(strip_tags(html).split())
    return max(1, math.ceil(words / WORDS_PER_MINUTE)) if words else 0


# ---------------------------------------------------------------------------
# Prompt builders
# ---------------------------------------------------------------------------


def _requirements(topic: str, campaign: Campaign, persona: str, fmt: str) -> str:
    return (
        f"## Content Requirements:\n"
        f"- Niche: {campaign.niche or 'general'}\n"
        f"- Voice: Write as {persona}\n"
        f"- Tone: {campaign.tone}\n"
        f"- Target length: {campaign.target_length}+ words\n"
        f"- Format: {fmt}\n"
    )


def _faq_block(include: bool, heading: str = "Frequently Asked Questions") -> str:
    if not include:
        return ""
    return (
        f'  <section class="faq" id="faq">\n'
        f"    <h2>{heading}</h2>\n"
        f'    <div class="faq-item">\n'
        f"      <h3>[Question]?</h3>\n"
        f"      <p>[Detailed, helpful answer]</p>\n"
        f"    </div>\n"
        f"    <!-- 4-6 relevant questions -->\n"
        f"  </section>\n"
    )


def _guide_prompt(topic: str, campaign: Campaign) -> str:
    toc = ""
    if campaign.include_toc:
        toc = (
            '  <nav class="toc">\n'
            "    <h2>Table of Contents</h2>\n"
            '    <ul><li><a href="#section-1">[Section 1 Title]</a></li><!-- all sections --></ul>\n'
            "  </nav>\n"
        )
    return (
        f'Write a comprehensive, SEO-optimized article about: "{topic}"\n\n'
        f"CRITICAL: Output ONLY valid HTML. Do not use Markdown or code fences.\n\n"
        + _requirements(topic, campaign, PERSONAS["guide"], "In-depth guide, E-E-A-T optimized")
        + "\n## HTML Structure (use exactly this format):\n\n"
        "<article>\n"
        "  <header>\n"
        "    <h1>[Compelling SEO-optimized title]</h1>\n"
        '    <p class="excerpt">[2-3 sentence introduction / meta description]</p>\n'
        "  </header>\n"
        + toc
        + '  <section id="section-1">\n'
        "    <h2>[Section Heading]</h2>\n"
        "    <p>[Detailed content]</p>\n"
        "  </section>\n"
        "  <!-- 3+ sections with substantial content -->\n"
        + _faq_block(campaign.include_faq)
        + "  <footer>\n"
        '    <section class="conclusion">\n'
        "      <h2>Final Thoughts</h2>\n"
        "      <p>[Key takeaways and a call to action]</p>\n"
        "    </section>\n"
        "  </footer>\n"
        "</article>\n\n"
        "## Guidelines:\n"
        "1. Use semantic HTML5 tags (article, section, header, footer, nav)\n"
        "2. H1 is for the title only; use H2/H3 for sections\n"
        "3. Use lists and <strong> where they help the reader\n"
        "4. Each section should be 150-300 words minimum\n\n"
        "Now write the complete HTML article:"
    )


def _listicle_prompt(topic: str, campaign: Campaign) -> str:
    year = datetime.now(timezone.utc).year
    return (
        f'Write a comprehensive listicle article about: "{topic}"\n\n'
        f"CRITICAL: Output ONLY valid HTML. Do not use Markdown.\n\n"
        + _requirements(topic, campaign, PERSONAS["listicle"], "Top 10-15 items (or \"Best\" list)")
        + "\n## HTML Structure:\n\n"
        '<article class="listicle">\n'
        "  <header>\n"
        f"    <h1>[Number + Best/Top + Topic Title for {year}]</h1>\n"
        '    <p class="excerpt">[Preview of what readers will learn]</p>\n'
        "  </header>\n"
        '  <section class="quick-picks">\n'
        "    <h2>Quick Summary</h2>\n"
        "    <ul><li><strong>Best Overall:</strong> [Item] - [Short reason]</li></ul>\n"
        "  </section>\n"
        '  <section class="list-item" id="item-1">\n'
        "    <h2>1. [Item Name]</h2>\n"
        "    <h3>Pros</h3><ul><li>[Pro]</li></ul>\n"
        "    <h3>Cons</h3><ul><li>[Con]</li></ul>\n"
        "    <p>[2-3 paragraphs of detailed review]</p>\n"
        "  </section>\n"
        "  <!-- Repeat for all items -->\n"
        + _faq_block(campaign.include_faq, "Buying Guide: What to Look For")
        + "  <footer>\n"
        '    <section class="conclusion">\n'
        "      <h2>The Bottom Line</h2>\n"
        "      <p>[Final recommendations]</p>\n"
        "    </section>\n"
        "  </footer>\n"
        "</article>\n\n"
        "Write the complete HTML listicle now:"
    )


def _howto_prompt(topic: str, campaign: Campaign) -> str:
    return (
        f'Write a comprehensive how-to guide about: "{topic}"\n\n'
        f"CRITICAL: Output ONLY valid HTML. Do not use Markdown.\n\n"
        + _requirements(topic, campaign, PERSONAS["howto"], "Step-by-step tutorial")
        + "\n## HTML Structure:\n\n"
        '<article class="how-to">\n'
        "  <header>\n"
        "    <h1>How to [Action]: [Specific Outcome] (Step-by-Step Guide)</h1>\n"
        '    <p class="excerpt">[What they will learn and why it matters]</p>\n'
        "  </header>\n"
        '  <section class="overview"><h2>What You\'ll Learn</h2><ul><li>[Outcome]</li></ul></section>\n'
        '  <section class="materials"><h2>Materials &amp; Tools Needed</h2><ul><li>[Item]</li></ul></section>\n'
        '  <section class="steps">\n'
        "    <h2>Step-by-Step Instructions</h2>\n"
        '    <div class="step"><h3>Step 1: [Action Title]</h3><p>[Explanation]</p></div>\n'
        "    <!-- Continue with all steps -->\n"
        "  </section>\n"
        '  <section class="troubleshooting"><h2>Common Mistakes to Avoid</h2><ul><li>[Mistake]</li></ul></section>\n'
        + _faq_block(campaign.include_faq)
        + "  <footer>\n"
        '    <section class="next-steps"><h2>What\'s Next?</h2><p>[Encourage action]</p></section>\n'
        "  </footer>\n"
        "</article>\n\n"
        "Write the complete HTML how-to guide now:"
    )


_TEMPLATES = {
    ArticleType.GUIDE: _guide_prompt,
    ArticleType.LISTICLE: _listicle_prompt,
    ArticleType.HOWTO: _howto_prompt,
}


def build_prompt(topic: str, campaign: Campaign, research: Optional[str] = None) -> str:
    """Build the generation prompt, appending research as grounding context."""
    prompt = _TEMPLATES[map_article_type(campaign.article_type)](topic, campaign)
    if research:
        prompt += f"\n\nUse this research to inform the content (cite naturally):\n{research}"
    return prompt


def build_research_prompt(topic: str, campaign: Campaign) -> str:
    return (
        f'Research the topic "{topic}" for an article in the {campaign.niche or "general"} niche.\n\n'
        "Provide:\n"
        "1. Key facts and current statistics, with their sources\n"
        "2. Expert perspectives and common misconceptions\n"
        "3. Questions readers frequently ask\n"
        "4. Angles competitors usually miss\n\n"
        "Be specific and cite sources by name."
    )


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


async def perform_research(invoker: FallbackInvoker, topic: str, campaign: Campaign) -> str:
    """
    Run the ``research`` capability for *topic*.

    Raises
    ------
    ResearchError
        When every research handler fails.
    """
    result = await invoker.invoke(
        Capability.RESEARCH,
        InvokeRequest(
            prompt=build_research_prompt(topic, campaign),
            max_tokens=RESEARCH_MAX_TOKENS,
            topic=topic,
        ),
        preferred=campaign.preferred_handler(Capability.RESEARCH.value),
    )
    if not result.success:
        raise ResearchError(result.error or "Research failed", attempted=result.attempted)
    logger.info("Research for %r via %s (%d chars)", topic, result.handler_used, len(result.text))
    return result.text


async def generate_content(
    invoker: FallbackInvoker,
    item: SourceItem,
    campaign: Campaign,
    research: Optional[str] = None,
) -> GeneratedContent:
    """
    Generate and parse the article for *item*.

    Parameters
    ----------
    invoker : FallbackInvoker
        Provider invoker.
    item : SourceItem
        Work item; its topic drives the prompt and the fallback title.
    campaign : Campaign
        Tone, type, length and provider preference.
    research : str, optional
        Grounding research appended to the prompt.

    Returns
    -------
    GeneratedContent

    Raises
    ------
    GenerationError
        When every generate handler fails. The message names each attempted
        handler and its error.
    """
    result = await invoker.invoke(
        Capability.GENERATE,
        InvokeRequest(
            prompt=build_prompt(item.topic, campaign, research),
            max_tokens=GENERATE_MAX_TOKENS,
            topic=item.topic,
        ),
        preferred=campaign.preferred_handler(Capability.GENERATE.value),
    )
    if not result.success:
        raise GenerationError(result.error or "Generation failed", attempted=result.attempted)

    content = parse_article(result.text, fallback_title=item.topic)
    content.handler_used = result.handler_used
    logger.info(
        "Generated %r via %s (%d words, slug=%s)",
        content.title[:60], result.handler_used, content.word_count, content.slug,
    )
    return content

"""
Content Quality Scoring and Review Decision
===========================================

Scores generated HTML on the four E-E-A-T dimensions plus a structural
fact-check signal, combines them into a 0-100 composite with a letter grade,
and turns the composite into a review decision (approve / flag / retry).

Dimensions:
    Experience         (0.25)  first-hand phrases, anecdotes, testing, insights
    Expertise          (0.30)  citation quality and density, credentials, depth
    Authoritativeness  (0.20)  domain authority, author topical authority, schema
    Trustworthiness    (0.25)  disclosures, freshness, byline, contact details

    composite = round(0.7 * eeat + 0.3 * fact_check)
    grade     = A >= 90, B >= 75, C >= 60, D >= 40, else F

Scoring is pure and deterministic: no network calls, no randomness.

Usage:
    from pressflow.quality import score_content, decide_review, should_publish, ReviewPolicy

    result = score_content(html, title="Best Budget Laptops")
    decision = decide_review(result.composite, ReviewPolicy(auto_approve_above=85))
    print(result.summary())
    print(should_publish(decision))
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from html import unescape
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from pressflow.config import AuthorProfile, now_iso

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("pressflow.quality")
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

EEAT_WEIGHTS = {
    "experience": 0.25,
    "expertise": 0.30,
    "authoritativeness": 0.20,
    "trustworthiness": 0.25,
}
EEAT_SHARE = 0.7
FACT_CHECK_SHARE = 0.3

DEFAULT_AUTO_APPROVE = 85
MIN_FLAG_SCORE = 40
FLAG_WINDOW = 30
MAX_RECOMMENDATIONS = 10

DEFAULT_DOMAIN_AUTHORITY = 30
NEUTRAL_BACKLINKS = 50
ASSUMED_TECHNICAL_ACCURACY = 70
ASSUMED_FACT_CHECK = 75

TIER_AUTHORITY = {
    "authoritative": 95,
    "reputable": 78,
    "standard": 52,
    "low": 28,
    "problematic": 8,
}

AUTHORITATIVE_DOMAINS = [
    ".gov", ".gov.uk", ".gov.au", ".gov.ca",
    ".edu", ".ac.uk", ".edu.au",
    "who.int", "cdc.gov", "nih.gov", "fda.gov",
    "nature.com", "science.org", "ncbi.nlm.nih.gov",
    "harvard.edu", "stanford.edu", "mit.edu", "oxford.ac.uk",
]

REPUTABLE_DOMAINS = [
    "nytimes.com", "washingtonpost.com", "bbc.com", "reuters.com",
    "theguardian.com", "bloomberg.com", "forbes.com", "wsj.com",
    "techcrunch.com", "wired.com", "theverge.com", "arstechnica.com",
    "zdnet.com", "cnet.com",
    "wikipedia.org", "britannica.com", "investopedia.com",
    "google.com", "microsoft.com", "apple.com", "amazon.com",
    "github.com", "stackoverflow.com",
]

_I = re.IGNORECASE

FIRST_HAND_PATTERNS = [re.compile(p, _I) for p in (
    r"\b(I|we)\s+(tested|tried|used|experimented|examined|evaluated|reviewed)",
    r"\b(I|we)\s+(found|discovered|noticed|observed|realized|learned)",
    r"\b(I|we)\s+(recommend|suggest|advise|personally prefer)",
    r"\bIn my (experience|opinion|view|testing)",
    r"\bFrom my (experience|perspective|point of view)",
    r"\bHaving (used|tested|worked with|spent time)",
    r"\bAfter (using|testing|trying|evaluating)",
    r"\bWhen I (first|actually|personally)",
    r"\b(I|we)\s+(saw|achieved|got|experienced)\s+\w+\s+results",
    r"\bThis worked (well|great|perfectly) for (me|us)",
    r"\bIn my case",
)]

ANECDOTE_PATTERNS = [re.compile(p, _I) for p in (
    r"\b(Let me (share|tell you)|Here's what happened)",
    r"\b(One time|Once|Recently),?\s+(I|we)\b",
    r"\bA few (months|weeks|years) ago",
    r"\bI remember when",
    r"\bFor example,?\s+(I|we|in my)\b",
    r"\bHere's an example from my",
    r"\bTo illustrate,?\s+(I|we)\b",
)]

INSIGHT_PATTERNS = [re.compile(p, _I) for p in (
    r"What (I|we) (found|discovered) was",
    r"The surprising thing (is|was)",
    r"Contrary to (popular belief|what you might think)",
    r"Most people don't (know|realize)",
    r"The (real|actual|hidden) (secret|truth|reason)",
    r"Here's what (nobody|few people) (tells|tell) you",
)]

TESTING_VERBS = [
    "tested", "tried", "evaluated", "reviewed", "examined",
    "experimented", "measured", "benchmarked", "compared", "analyzed",
]

EXPERIENCE_VERBS = [
    "found", "discovered", "noticed", "observed", "realized",
    "learned", "experienced", "witnessed", "encountered", "saw",
]

CREDENTIAL_PATTERNS = [re.compile(p, _I) for p in (
    r"As a (certified|licensed|qualified|professional) ([^,.\n]+)",
    r"With my (degree|certification|license|training) in ([^,.\n]+)",
    r"Having (worked|practiced|studied) ([^,.\n]+) for (\d+|\w+) years",
)]

BASIC_INDICATORS = [re.compile(r"\b(simple|easy|basic|beginner|introduction|overview)\b", _I)]
ADVANCED_INDICATORS = [
    re.compile(r"\b(advanced|expert|professional|technical|comprehensive|in-depth)\b", _I),
    re.compile(r"\b(algorithm|optimization|implementation|architecture|methodology)\b", _I),
]

REFERENCE_PATTERNS = [re.compile(p, _I) for p in (
    r"according to ([^,.\n]+)",
    r"cited by ([^,.\n]+)",
    r"research (?:from|by) ([^,.\n]+)",
    r"study (?:from|by|in) ([^,.\n]+)",
    r"source:\s*([^,.\n]+)",
)]

CLAIM_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\d+(?:\.\d+)?%?\s+(?:of|percent|people|users|studies|experts)", _I), "statistic"),
    (re.compile(r"according to\s+(?:a\s+)?(?:study|research|survey|report|data)", _I), "finding"),
    (re.compile(r"research shows|studies show|data shows|evidence suggests", _I), "finding"),
    (re.compile(r"\"[^\"]{20,200}\""), "quote"),
    (re.compile(r"(said|stated|claimed|reported)\s+that", _I), "quote"),
    (re.compile(r"it is (?:a )?fact that|the fact is|factually", _I), "fact"),
    (re.compile(r"has been proven|scientifically proven|medically proven", _I), "claim"),
    (re.compile(r"\b(causes?|prevents?|cures?|treats?)\s+\w+", _I), "claim"),
]

ATTRIBUTION_PATTERN = re.compile(r"according to|source:|cited from|research by", _I)
MAX_CLAIMS = 10
MAX_INSIGHTS = 5
MAX_TECH_TERMS = 20


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Grade(str, Enum):
    A = "A"  # 90-100
    B = "B"  # 75-89
    C = "C"  # 60-74
    D = "D"  # 40-59
    F = "F"  # 0-39


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    FLAG = "flag"
    RETRY = "retry"


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass
class Citation:
    text: str
    url: Optional[str] = None
    domain: Optional[str] = None
    tier: Optional[str] = None
    authority: int = 0


@dataclass
class CitationAnalysis:
    total: int = 0
    by_tier: Dict[str, int] = field(default_factory=lambda: {t: 0 for t in TIER_AUTHORITY})
    density: float = 0.0
    average_authority: int = 0
    has_external_links: bool = False
    citations: List[Citation] = field(default_factory=list)


@dataclass
class DimensionScore:
    """Score (0-100) for one E-E-A-T dimension."""

    name: str
    score: int
    details: Dict[str, Any] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class QualityScoreResult:
    composite: int
    grade: Grade
    eeat_score: int
    fact_check_score: int
    dimensions: Dict[str, DimensionScore] = field(default_factory=dict)
    word_count: int = 0
    claim_count: int = 0
    claim_density: float = 0.0
    citation_count: int = 0
    recommendations: List[str] = field(default_factory=list)
    scored_at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "composite": self.composite,
            "grade": self.grade.value,
            "eeat_score": self.eeat_score,
            "fact_check_score": self.fact_check_score,
            "dimensions": {k: v.to_dict() for k, v in self.dimensions.items()},
            "word_count": self.word_count,
            "claim_count": self.claim_count,
            "claim_density": round(self.claim_density, 2),
            "citation_count": self.citation_count,
            "recommendations": self.recommendations,
            "scored_at": self.scored_at,
        }

    def summary(self) -> str:
        """Return a human-readable summary of the scores."""
        lines = [
            f"{'=' * 60}",
            f"  QUALITY SCORE: {self.composite}/100  ({self.grade.value})",
            f"{'=' * 60}",
            f"  E-E-A-T:       {self.eeat_score}/100",
            f"  Fact check:    {self.fact_check_score}/100",
            f"  Words:         {self.word_count:,}",
            f"  Citations:     {self.citation_count}",
            f"",
        ]
        for name, dim in self.dimensions.items():
            bar = "#" * (dim.score // 10) + "-" * (10 - dim.score // 10)
            lines.append(f"    {name.title():<18} {dim.score:>3}/100  [{bar}]")
        if self.recommendations:
            lines.append("")
            lines.append("  Recommendations:")
            for i, rec in enumerate(self.recommendations[:5], 1):
                lines.append(f"    {i}. {rec}")
        lines.append(f"{'=' * 60}")
        return "\n".join(lines)


@dataclass
class ReviewPolicy:
    enabled: bool = True
    auto_approve_above: int = DEFAULT_AUTO_APPROVE
    min_flag_score: int = MIN_FLAG_SCORE
    flag_window: int = FLAG_WINDOW

    @property
    def flag_floor(self) -> int:
        return max(self.min_flag_score, self.auto_approve_above - self.flag_window)


@dataclass
class PublishDecision:
    publish: bool
    reason: str
    should_retry: bool = False
    flagged: bool = False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def score_to_grade(score: float) -> Grade:
    """Convert a 0-100 score to a letter grade (inclusive lower bounds)."""
    if score >= 90:
        return Grade.A
    elif score >= 75:
        return Grade.B
    elif score >= 60:
        return Grade.C
    elif score >= 40:
        return Grade.D
    else:
        return Grade.F


def _clamp(value: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, value))


def _plain_text(html: str) -> str:
    return re.sub(r"\s+", " ", unescape(re.sub(r"<[^>]+>", " ", html or ""))).strip()


def _sentences(text: str) -> List[str]:
    return [s.strip() for s in re.split(r"[.!?]+", text) if s.strip()]


def _count_verbs(text_lower: str, verbs: List[str]) -> int:
    return sum(
        len(re.findall(rf"\b(?:i|we)\s+(?:have\s+)?{verb}\b", text_lower))
        for verb in verbs
    )


# ---------------------------------------------------------------------------
# Citations
# ---------------------------------------------------------------------------


def classify_domain(domain: str) -> str:
    """Quality tier for *domain*: authoritative, reputable or standard."""
    d = domain.lower()
    if any(d.endswith(a) or d == a.lstrip(".") for a in AUTHORITATIVE_DOMAINS):
        return "authoritative"
    if any(d == r or d.endswith("." + r) for r in REPUTABLE_DOMAINS):
        return "reputable"
    if d.endswith(".org"):
        return "reputable"
    return "standard"


def domain_authority(domain: str) -> int:
    return TIER_AUTHORITY[classify_domain(domain)]


def extract_citations(html: str) -> List[Citation]:
    """External links plus unlinked "according to X" style references."""
    citations: List[Citation] = []
    link_re = re.compile(r"<a[^>]+href=[\"']([^\"']+)[\"'][^>]*>(.*?)</a>", _I | re.DOTALL)
    for match in link_re.finditer(html or ""):
        url = match.group(1).strip()
        anchor = _plain_text(match.group(2))
        if url.startswith("#") or ("://" not in url and not url.startswith("//")):
            continue
        if re.search(r"\.(jpg|jpeg|png|gif|svg|pdf)$", url, _I):
            continue
        host = urlparse(url if "://" in url else f"https:{url}").hostname
        if not host:
            continue
        domain = host[4:] if host.startswith("www.") else host
        tier = classify_domain(domain)
        citations.append(Citation(
            text=anchor, url=url, domain=domain, tier=tier, authority=TIER_AUTHORITY[tier],
        ))

    text = _plain_text(html)
    for pattern in REFERENCE_PATTERNS:
        for match in pattern.finditer(text):
            name = match.group(1).strip()
            if len(name) < 3 or len(name) > 100:
                continue
            lowered = name.lower()
            if any(lowered in c.text.lower() for c in citations):
                continue
            citations.append(Citation(text=name))
    return citations


def analyze_citations(citations: List[Citation], word_count: int) -> CitationAnalysis:
    analysis = CitationAnalysis(total=len(citations), citations=citations)
    total_authority = 0
    for citation in citations:
        if citation.tier:
            analysis.by_tier[citation.tier] += 1
        total_authority += citation.authority
        if citation.url:
            analysis.has_external_links = True
    analysis.density = (len(citations) / word_count) * 1000 if word_count > 0 else 0.0
    analysis.average_authority = round(total_authority / len(citations)) if citations else 0
    return analysis


def _citation_recommendations(analysis: CitationAnalysis) -> List[str]:
    recs = []
    if analysis.total < 3:
        recs.append("Add more citations - aim for at least 3-5 authoritative sources")
    if analysis.by_tier["authoritative"] == 0:
        recs.append("Include at least one authoritative source (.gov, .edu, or major institution)")
    if analysis.density < 1:
        recs.append("Citation density is low - add more sources throughout the content")
    if not analysis.has_external_links:
        recs.append("Add external links to authoritative sources to build credibility")
    if analysis.average_authority < 50:
        recs.append("Improve source quality - cite more authoritative domains")
    return recs


# ---------------------------------------------------------------------------
# Dimension scorers
# ---------------------------------------------------------------------------


def score_experience(text: str) -> DimensionScore:
    sentences = _sentences(text)
    lower = text.lower()

    first_hand = sum(1 for s in sentences if any(p.search(s) for p in FIRST_HAND_PATTERNS))

    anecdotes = 0
    stories = 0
    for sentence in sentences:
        if len(sentence) < 20:
            continue
        if any(p.search(sentence) for p in ANECDOTE_PATTERNS):
            anecdotes += 1
            if not re.search(r"example|illustrate|compared|unlike|versus|result|outcome|achieved", sentence, _I):
                stories += 1

    insights = min(
        MAX_INSIGHTS,
        sum(1 for s in sentences if any(p.search(s) for p in INSIGHT_PATTERNS)),
    )
    testing = _count_verbs(lower, TESTING_VERBS)
    exp_verbs = _count_verbs(lower, EXPERIENCE_VERBS)

    original_content = min(100, 50 + insights * 10 + stories * 5)
    author_perspective = min(100, (first_hand * 5 + testing * 8 + exp_verbs * 3) * 2)
    unique_insights = min(100, insights * 20)
    score = round(original_content * 0.3 + author_perspective * 0.5 + unique_insights * 0.2)

    recs = []
    if first_hand < 3:
        recs.append('Add more first-hand experience phrases like "I tested" or "In my experience"')
    if anecdotes == 0:
        recs.append("Include a personal story or example from your experience")
    if testing == 0:
        recs.append("Mention actual testing or evaluation you performed")
    if insights == 0:
        recs.append("Share unique insights or discoveries not commonly known")

    return DimensionScore(
        name="experience",
        score=score,
        details={
            "first_hand_phrases": first_hand,
            "anecdotes": anecdotes,
            "testing_mentions": testing,
            "experience_verbs": exp_verbs,
            "original_insights": insights,
            "original_content": original_content,
            "author_perspective": author_perspective,
        },
        recommendations=recs,
    )


def _complexity_level(text: str) -> str:
    basic = sum(len(p.findall(text)) for p in BASIC_INDICATORS)
    advanced = sum(len(p.findall(text)) for p in ADVANCED_INDICATORS)
    if advanced > 5:
        return "advanced"
    if basic > advanced:
        return "basic"
    return "intermediate"


def _technical_terms(text: str) -> List[str]:
    terms = re.findall(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)+\b", text)
    terms += re.findall(r"\b[A-Z]{2,5}\b", text)
    return list(dict.fromkeys(terms))[:MAX_TECH_TERMS]


def score_expertise(text: str, analysis: CitationAnalysis) -> DimensionScore:
    tech_terms = _technical_terms(text)
    credentials = [m.group(0) for p in CREDENTIAL_PATTERNS for m in p.finditer(text)]
    complexity = _complexity_level(text)

    density_score = min(100, analysis.density * 25)
    credibility = len(tech_terms) * 2 + len(credentials) * 15
    credibility += {"advanced": 20, "intermediate": 10}.get(complexity, 0)
    credibility = min(100, credibility)

    score = round(
        analysis.average_authority * 0.35
        + density_score * 0.25
        + credibility * 0.25
        + ASSUMED_TECHNICAL_ACCURACY * 0.15
    )

    recs = _citation_recommendations(analysis)
    if not credentials:
        recs.append("Mention your relevant credentials or expertise")
    if complexity == "basic":
        recs.append("Add more in-depth technical detail to demonstrate expertise")

    return DimensionScore(
        name="expertise",
        score=score,
        details={
            "source_quality": analysis.average_authority,
            "citation_density": round(analysis.density, 2),
            "credibility": credibility,
            "technical_terms": len(tech_terms),
            "credentials": len(credentials),
            "complexity": complexity,
        },
        recommendations=recs,
    )


def score_authoritativeness(
    html: str,
    author: Optional[AuthorProfile] = None,
    site_authority: Optional[int] = None,
) -> DimensionScore:
    schema = '"@type":"Person"' in html or '"@type": "Person"' in html
    da = DEFAULT_DOMAIN_AUTHORITY if site_authority is None else site_authority

    topical = 40
    if author:
        topical = min(100, topical + len(author.credentials) * 10 + len(author.expertise) * 5)

    score = round(
        da * 0.35 + topical * 0.35 + NEUTRAL_BACKLINKS * 0.20 + (10 if schema else 0)
    )

    recs = []
    if not (author and author.credentials):
        recs.append("Add author credentials to build authority")
    if not (author and len(author.bio) > 50):
        recs.append("Include a detailed author bio")
    if not schema:
        recs.append("Add Person schema markup for the author")

    return DimensionScore(
        name="authoritativeness",
        score=score,
        details={"domain_authority": da, "topical_authority": topical, "author_schema": schema},
        recommendations=recs,
    )


def score_trustworthiness(html: str, now: Optional[datetime] = None) -> DimensionScore:
    text = (html or "").lower()
    year = (now or datetime.now(timezone.utc)).year

    has_disclaimer = bool(
        re.search(r"\bdisclaimer\b", text)
        or re.search(r"\bthis (article|content|post) is (for|provided)", text)
    )
    has_affiliate = bool(
        re.search(r"affiliate (link|disclosure|commission)", text)
        or re.search(r"we (may )?earn (a )?commission", text)
    )
    has_updated = bool(
        re.search(r"last (updated|modified|reviewed):\s*\d", text)
        or re.search(r"<time[^>]*datetime=", text)
    )
    has_byline = bool(
        re.search(r"\bby\s+[a-z]+\s+[a-z]", text)
        or re.search(r"<a[^>]*class=\"[^\"]*author", text)
    )
    has_contact = bool(re.search(r"contact (us|me)|email:\s*\S+@", text))
    transparent_affiliate = bool(
        re.search(r"affiliate (disclosure|disclaimer)", text)
        and re.search(r"at no (extra|additional) cost", text)
    )

    recent_years = {str(y) for y in range(year - 2, year + 1)}
    has_recent_date = any(y in recent_years for y in re.findall(r"\b(20\d\d)\b", text))
    date_relevance = 85 if has_recent_date else (70 if has_updated else 50)

    score = ASSUMED_FACT_CHECK * 0.30
    score += 15 if (has_disclaimer or has_affiliate) else 0
    score += date_relevance * 0.20
    score += 15 if has_byline else 0
    score += 10 if has_contact else 0
    score += 10 if transparent_affiliate else 0
    score = round(min(100, score))

    recs = []
    if not has_updated:
        recs.append('Add a "Last Updated" date to show content freshness')
    if not has_byline:
        recs.append("Include clear author attribution with byline")
    if not has_affiliate:
        recs.append("Add affiliate disclosure if applicable")
    if not has_disclaimer:
        recs.append("Consider adding appropriate disclaimers for your content type")

    return DimensionScore(
        name="trustworthiness",
        score=score,
        details={
            "disclaimer": has_disclaimer,
            "affiliate_disclosure": has_affiliate,
            "last_updated": has_updated,
            "byline": has_byline,
            "contact": has_contact,
            "date_relevance": date_relevance,
        },
        recommendations=recs,
    )


def extract_claims(text: str) -> List[Tuple[str, str]]:
    """Sentences (> 20 chars) that carry a checkable claim, with a category."""
    claims: List[Tuple[str, str]] = []
    seen = set()
    for sentence in _sentences(text):
        if len(sentence) <= 20:
            continue
        for pattern, category in CLAIM_PATTERNS:
            if pattern.search(sentence):
                if sentence not in seen:
                    seen.add(sentence)
                    claims.append((sentence[:300], category))
                break
    return claims[:MAX_CLAIMS]


def fact_check_score(text: str, word_count: int) -> Tuple[int, int, float]:
    """Return (score, claim_count, claims per 1000 words)."""
    claims = extract_claims(text)
    density = (len(claims) / word_count) * 1000 if word_count > 0 else 0.0
    score = 70
    if ATTRIBUTION_PATTERN.search(text):
        score += 15
    if 2 <= density <= 10:
        score += 15
    if density > 15:
        score -= 10
    return int(_clamp(score)), len(claims), density


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def score_content(
    html: str,
    title: str = "",
    author: Optional[AuthorProfile] = None,
    site_authority: Optional[int] = None,
) -> QualityScoreResult:
    """
    Score article HTML.

    Parameters
    ----------
    html : str
        Article body.
    title : str
        Used only for logging.
    author : AuthorProfile, optional
        Matched author; feeds the authoritativeness dimension.
    site_authority : int, optional
        Known domain authority of the target site (default 30).

    Returns
    -------
    QualityScoreResult
    """
    text = _plain_text(html)
    word_count = len(text.split())

    analysis = analyze_citations(extract_citations(html), word_count)
    dims = {
        "experience": score_experience(text),
        "expertise": score_expertise(text, analysis),
        "authoritativeness": score_authoritativeness(html, author, site_authority),
        "trustworthiness": score_trustworthiness(html),
    }
    eeat = round(sum(dims[name].score * weight for name, weight in EEAT_WEIGHTS.items()))
    fact, claim_count, claim_density = fact_check_score(text, word_count)
    composite = round(EEAT_SHARE * eeat + FACT_CHECK_SHARE * fact)

    recommendations: List[str] = []
    for dim in dims.values():
        recommendations.extend(dim.recommendations)

    result = QualityScoreResult(
        composite=composite,
        grade=score_to_grade(composite),
        eeat_score=eeat,
        fact_check_score=fact,
        dimensions=dims,
        word_count=word_count,
        claim_count=claim_count,
        claim_density=claim_density,
        citation_count=analysis.total,
        recommendations=recommendations[:MAX_RECOMMENDATIONS],
    )
    logger.info(
        "Scored %r: %d (%s) eeat=%d fact=%d words=%d",
        title[:60], composite, result.grade.value, eeat, fact, word_count,
    )
    return result


def decide_review(score: float, policy: Optional[ReviewPolicy] = None) -> ReviewDecision:
    """
    Map a composite score to a review decision.

    A disabled gate always approves. Otherwise: score >= threshold approves,
    score >= max(40, threshold - 30) flags, anything lower retries.
    """
    policy = policy or ReviewPolicy()
    if not policy.enabled:
        return ReviewDecision.APPROVE
    if score >= policy.auto_approve_above:
        return ReviewDecision.APPROVE
    if score >= policy.flag_floor:
        return ReviewDecision.FLAG
    return ReviewDecision.RETRY


def should_publish(decision: ReviewDecision) -> PublishDecision:
    decision = ReviewDecision(decision)
    if decision == ReviewDecision.APPROVE:
        return PublishDecision(publish=True, reason="Quality approved")
    if decision == ReviewDecision.FLAG:
        return PublishDecision(
            publish=True, reason="Published with review flag: quality below auto-approve threshold",
            flagged=True,
        )
    return PublishDecision(
        publish=False, reason="Quality too low: regenerate before publishing", should_retry=True,
    )

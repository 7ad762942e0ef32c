"""
Duplicate-topic gate and generated-posts ledger
===============================================

Before any generation work starts, the orchestrator asks the ledger whether
a topic has effectively been written already for the campaign (or, when the
campaign opts in, anywhere on the site). After a successful publish the
topic is recorded exactly once.

Similarity is the Jaccard index of the normalized word sets of two topics.
Normalization lower-cases, strips punctuation, collapses whitespace and drops
stopwords.

Thresholds:
    > 0.8  same campaign and site     -> skip
    > 0.9  any campaign on the site   -> skip (opt-in)

The check, the publish and the record for one (campaign, site, topic) key
run under a per-key ``asyncio.Lock`` obtained from ``DedupLedger.serialize``.

The file keeps two things: every recorded (campaign, site, normalized topic)
key, and the newest ``MAX_RECORDS`` detail records. Once a detail record is
capped away its exact key still blocks the topic.

Usage:
    from pressflow.dedup import get_ledger

    ledger = get_ledger()
    decision = ledger.should_skip_topic("Best Budget Laptops", "c1", "site1")
    if decision.skip:
        print(decision.reason)
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Hashable, List, Optional, Set, Tuple

from pressflow.config import get_settings, load_json, now_iso, save_json

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("pressflow.dedup")
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

CAMPAIGN_SIMILARITY_THRESHOLD = 0.8
SITE_SIMILARITY_THRESHOLD = 0.9
MAX_RECORDS = 10000  # detail records; recorded keys are never capped

STOPWORDS = frozenset(
    "the a an and or but in on at to for of with by".split()
)

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Normalization & similarity
# ---------------------------------------------------------------------------


def normalize_topic(topic: str) -> str:
    """Lower-case, strip punctuation, collapse spaces and drop stopwords."""
    text = _NON_ALNUM.sub(" ", (topic or "").lower())
    words = [w for w in _WHITESPACE.split(text.strip()) if w and w not in STOPWORDS]
    return " ".join(words)


def similarity_score(a: str, b: str) -> float:
    """Jaccard similarity (0.0-1.0) between the normalized word sets of *a* and *b*."""
    na, nb = normalize_topic(a), normalize_topic(b)
    if na == nb:
        return 1.0
    words_a, words_b = set(na.split()), set(nb.split())
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass
class GeneratedPostRecord:
    campaign_id: str
    site_id: str
    topic: str
    normalized_topic: str = ""
    title: str = ""
    slug: str = ""
    wp_post_id: Optional[int] = None
    wp_post_url: str = ""
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=now_iso)

    def __post_init__(self):
        if not self.normalized_topic:
            self.normalized_topic = normalize_topic(self.topic)

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.campaign_id, self.site_id, self.normalized_topic)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> GeneratedPostRecord:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class DedupDecision:
    skip: bool
    reason: str = ""
    similarity: float = 0.0
    matched_topic: str = ""


# ---------------------------------------------------------------------------
# Per-key locks
# ---------------------------------------------------------------------------


class KeyedLocks:
    """One ``asyncio.Lock`` per key, dropped once nobody holds or awaits it."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class DedupLedger:
    """
    Durable record of generated posts backed by a JSON file.

    Parameters
    ----------
    path : Path, optional
        Ledger file. Defaults to ``<data_dir>/ledger.json``.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path or get_settings().ledger_path
        self._records: List[GeneratedPostRecord] = []
        self._keys: Set[Tuple[str, str, str]] = set()
        self._loaded = False
        self._locks = KeyedLocks()

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        raw = load_json(self.path, default=[])
        keys: List[Any] = []
        if isinstance(raw, dict):
            keys = raw.get("keys", [])
            raw = raw.get("records", [])
        self._records = [GeneratedPostRecord.from_dict(r) for r in raw if isinstance(r, dict)]
        self._keys = {tuple(k) for k in keys if isinstance(k, list) and len(k) == 3}
        self._keys.update(r.key for r in self._records)
        self._loaded = True

    def _persist(self) -> None:
        if len(self._records) > MAX_RECORDS:
            self._records = self._records[-MAX_RECORDS:]
        save_json(self.path, {
            "keys": [list(k) for k in sorted(self._keys)],
            "records": [r.to_dict() for r in self._records],
        })

    # -- Gate ----------------------------------------------------------------

    def should_skip_topic(
        self,
        topic: str,
        campaign_id: str,
        site_id: str,
        check_site_wide: bool = False,
    ) -> DedupDecision:
        """
        Decide whether *topic* duplicates previously generated content.

        Parameters
        ----------
        topic : str
            Candidate topic.
        campaign_id, site_id : str
            Scope of the campaign-level check.
        check_site_wide : bool
            Also compare against every campaign's records on the same site
            at the stricter site-wide threshold.

        Returns
        -------
        DedupDecision
            ``skip`` is True with a reason and the best similarity when the
            topic is a duplicate.
        """
        self._ensure_loaded()
        normalized = normalize_topic(topic)
        if (campaign_id, site_id, normalized) in self._keys:
            return self._skip(topic, 1.0, normalized)
        if check_site_wide and any(k[1] == site_id and k[2] == normalized for k in self._keys):
            return self._skip(topic, 1.0, normalized)

        best_score, best_topic = 0.0, ""

        for record in self._records:
            if record.campaign_id != campaign_id or record.site_id != site_id:
                continue
            score = similarity_score(topic, record.topic)
            if score > best_score:
                best_score, best_topic = score, record.topic

        if best_score > CAMPAIGN_SIMILARITY_THRESHOLD:
            return self._skip(topic, best_score, best_topic)

        if check_site_wide:
            site_best, site_topic = 0.0, ""
            for record in self._records:
                if record.site_id != site_id:
                    continue
                score = similarity_score(topic, record.topic)
                if score > site_best:
                    site_best, site_topic = score, record.topic
            if site_best > SITE_SIMILARITY_THRESHOLD:
                return self._skip(topic, site_best, site_topic)

        return DedupDecision(skip=False, similarity=best_score, matched_topic=best_topic)

    @staticmethod
    def _skip(topic: str, score: float, matched: str) -> DedupDecision:
        reason = f"Similar to previously generated content ({round(score * 100)}% match)"
        logger.info("Skipping %r: %s (matched %r)", topic, reason, matched)
        return DedupDecision(skip=True, reason=reason, similarity=score, matched_topic=matched)

    # -- Recording -----------------------------------------------------------

    def record_generated_post(
        self,
        campaign_id: str,
        site_id: str,
        topic: str,
        title: str = "",
        slug: str = "",
        wp_post_id: Optional[int] = None,
        wp_post_url: str = "",
    ) -> GeneratedPostRecord:
        """
        Record a published topic. Recording the same (campaign, site,
        normalized topic) twice keeps the first record and returns it.
        """
        self._ensure_loaded()
        record = GeneratedPostRecord(
            campaign_id=campaign_id,
            site_id=site_id,
            topic=topic,
            title=title,
            slug=slug,
            wp_post_id=wp_post_id,
            wp_post_url=wp_post_url,
        )
        if record.key in self._keys:
            logger.debug("Topic %r already recorded for %s/%s", topic, campaign_id, site_id)
            for existing in self._records:
                if existing.key == record.key:
                    return existing
            return record

        self._records.append(record)
        self._keys.add(record.key)
        self._persist()
        logger.info("Recorded post for %s/%s: %s", campaign_id, site_id, title or topic)
        return record

    # -- Serialization -------------------------------------------------------

    @asynccontextmanager
    async def serialize(self, campaign_id: str, site_id: str, topic: str) -> AsyncIterator[None]:
        """Hold the per-key lock for (campaign, site, normalized topic)."""
        async with self._locks.hold((campaign_id, site_id, normalize_topic(topic))):
            yield

    # -- Queries -------------------------------------------------------------

    def is_title_used(self, title: str, site_id: str) -> bool:
        self._ensure_loaded()
        wanted = title.strip().lower()
        return any(r.site_id == site_id and r.title.strip().lower() == wanted for r in self._records)

    def is_slug_used(self, slug: str, site_id: str) -> bool:
        self._ensure_loaded()
        return any(r.site_id == site_id and r.slug == slug for r in self._records)

    def get_records(
        self,
        campaign_id: Optional[str] = None,
        site_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[GeneratedPostRecord]:
        self._ensure_loaded()
        records = [
            r for r in self._records
            if (campaign_id is None or r.campaign_id == campaign_id)
            and (site_id is None or r.site_id == site_id)
        ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]

    def clear_older_than(self, days: int) -> int:
        """Forget records older than *days*, keys included; return how many were removed."""
        self._ensure_loaded()
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        stale = [r for r in self._records if r.created_at < cutoff]
        self._records = [r for r in self._records if r.created_at >= cutoff]
        self._keys.difference_update(r.key for r in stale)
        removed = len(stale)
        if removed:
            self._persist()
            logger.info("Cleared %d ledger record(s) older than %d days", removed, days)
        return removed


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_ledger: Optional[DedupLedger] = None


def get_ledger() -> DedupLedger:
    global _ledger
    if _ledger is None:
        _ledger = DedupLedger()
    return _ledger

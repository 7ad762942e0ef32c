"""
Pipeline Orchestrator
=====================

Runs one work item through the full pipeline:

    dedup gate -> research -> generation -> images -> side-pipelines
    -> quality scoring -> publish -> record in ledger

Each invocation owns a ``RunContext`` whose status moves forward through
``RunStatus``. Optional stages (images, enrichers) degrade on failure; the
rest are fatal and leave the run ``failed`` with ``error = "<Stage>: <msg>"``.
A low quality score ends the run in ``retry_requested`` without publishing.

Run summaries persist to ``runs.json`` under the data directory.

Usage:
    from pressflow.orchestrator import get_orchestrator

    orchestrator = get_orchestrator()
    ctx = await orchestrator.execute(campaign, SourceItem("Best budget espresso machines"))
    print(ctx.status, ctx.publish_result.post_url)

    runs = await orchestrator.execute_batch(campaign, items, max_concurrent=3)
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pressflow.config import AuthorProfile, Campaign, SourceItem, get_settings, load_json, now_iso, save_json
from pressflow.dedup import DedupDecision, DedupLedger, get_ledger
from pressflow.enrichment import Enricher, default_enrichers
from pressflow.generation import GeneratedContent, PipelineError, generate_content, perform_research
from pressflow.images import GeneratedImages, ImageAcquirer
from pressflow.providers import FallbackInvoker, build_default_invoker
from pressflow.publisher import AuthorDirectory, Publisher, PublishResult
from pressflow.quality import (
    QualityScoreResult,
    ReviewDecision,
    ReviewPolicy,
    decide_review,
    score_content,
    should_publish,
)
from pressflow.tracking import ActionSink, LoggingStatusSink, StatusSink, safe_notify
from pressflow.wordpress_client import SiteRegistry, get_site_registry

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("pressflow.orchestrator")
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

MAX_RUNS = 2000
DEFAULT_MAX_CONCURRENT = 3
DEFAULT_QUALITY_ATTEMPTS = 3


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RunStatus(str, Enum):
    PENDING = "pending"
    RESEARCHING = "researching"
    GENERATING = "generating"
    IMAGING = "imaging"
    LINKING = "linking"
    SCORING = "scoring"
    PUBLISHING = "publishing"
    DONE = "done"
    FAILED = "failed"
    RETRY_REQUESTED = "retry_requested"


_FORWARD_ORDER = [
    RunStatus.PENDING,
    RunStatus.RESEARCHING,
    RunStatus.GENERATING,
    RunStatus.IMAGING,
    RunStatus.LINKING,
    RunStatus.SCORING,
    RunStatus.PUBLISHING,
    RunStatus.DONE,
]

TERMINAL_STATUSES = frozenset({RunStatus.DONE, RunStatus.FAILED, RunStatus.RETRY_REQUESTED})

_STAGE_LABELS = {
    RunStatus.PENDING: "Setup",
    RunStatus.RESEARCHING: "Research",
    RunStatus.GENERATING: "Generation",
    RunStatus.IMAGING: "Images",
    RunStatus.LINKING: "Enrichment",
    RunStatus.SCORING: "Quality",
    RunStatus.PUBLISHING: "Publish",
}


def can_transition(old: RunStatus, new: RunStatus) -> bool:
    """
    Whether *old* -> *new* is legal.

    Statuses only move forward (stages may be skipped), ``failed`` is
    reachable from any non-terminal status, and ``retry_requested`` only
    from ``scoring``.
    """
    old, new = RunStatus(old), RunStatus(new)
    if old in TERMINAL_STATUSES:
        return False
    if new == RunStatus.FAILED:
        return True
    if new == RunStatus.RETRY_REQUESTED:
        return old == RunStatus.SCORING
    return _FORWARD_ORDER.index(new) > _FORWARD_ORDER.index(old)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class InvalidTransitionError(PipelineError):
    stage = "Pipeline"

    def __init__(self, old: str, new: str):
        self.old = old
        self.new = new
        super().__init__(f"Illegal status transition {old} -> {new}")


class DuplicateTopicError(PipelineError):
    """The dedup gate decided this topic has already been covered."""

    stage = "Dedup"

    def __init__(self, message: str, decision: Optional[DedupDecision] = None):
        self.decision = decision
        super().__init__(message)


# ---------------------------------------------------------------------------
# Run context
# ---------------------------------------------------------------------------


@dataclass
class RunContext:
    """Mutable record for one pipeline invocation. Never shared across runs."""

    run_id: str
    campaign: Campaign
    source_item: SourceItem
    status: RunStatus = RunStatus.PENDING
    status_history: List[Dict[str, str]] = field(default_factory=list)
    attempt: int = 1
    site_name: str = ""
    research: Optional[str] = None
    content: Optional[GeneratedContent] = None
    images: Optional[GeneratedImages] = None
    quality: Optional[QualityScoreResult] = None
    review_decision: Optional[ReviewDecision] = None
    flagged_for_review: bool = False
    matched_author: Optional[AuthorProfile] = None
    publish_result: Optional[PublishResult] = None
    degraded_stages: List[Dict[str, str]] = field(default_factory=list)
    error: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    completed_at: Optional[str] = None

    def degrade(self, stage: str, error: str) -> None:
        self.degraded_stages.append({"stage": stage, "error": error})

    def summary(self) -> Dict[str, Any]:
        """Flat, JSON-safe summary for the run store."""
        return {
            "run_id": self.run_id,
            "campaign_id": self.campaign.campaign_id,
            "site_id": self.campaign.site_id,
            "topic": self.source_item.topic,
            "status": RunStatus(self.status).value,
            "status_history": list(self.status_history),
            "attempt": self.attempt,
            "title": self.content.title if self.content else "",
            "slug": self.content.slug if self.content else "",
            "word_count": self.content.word_count if self.content else 0,
            "image_count": self.images.count if self.images else 0,
            "image_failures": [f.to_dict() for f in self.images.failures] if self.images else [],
            "quality_score": self.quality.composite if self.quality else None,
            "grade": self.quality.grade.value if self.quality else None,
            "review_decision": self.review_decision.value if self.review_decision else None,
            "flagged_for_review": self.flagged_for_review,
            "author": self.matched_author.name if self.matched_author else None,
            "post_id": self.publish_result.post_id if self.publish_result else None,
            "post_url": self.publish_result.post_url if self.publish_result else None,
            "degraded_stages": list(self.degraded_stages),
            "error": self.error,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }


# ---------------------------------------------------------------------------
# Run store
# ---------------------------------------------------------------------------


class RunStore:
    """Persists run summaries keyed by run id, bounded to ``max_runs``."""

    def __init__(self, path: Optional[Path] = None, max_runs: int = MAX_RUNS):
        self.path = path or get_settings().runs_path
        self.max_runs = max_runs
        self._runs: Dict[str, Dict[str, Any]] = {}
        self._loaded = False

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            raw = load_json(self.path, default={})
            if isinstance(raw, list):
                self._runs = {r.get("run_id", uuid.uuid4().hex): r for r in raw}
            elif isinstance(raw, dict):
                self._runs = raw
            else:
                self._runs = {}
            self._loaded = True

    def save_run(self, ctx: RunContext) -> None:
        """Persist a run (upsert)."""
        self._ensure_loaded()
        self._runs[ctx.run_id] = ctx.summary()
        self._trim()
        save_json(self.path, self._runs)

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        self._ensure_loaded()
        data = self._runs.get(run_id)
        if data is None:
            matches = [rid for rid in self._runs if rid.startswith(run_id)]
            if len(matches) == 1:
                data = self._runs[matches[0]]
        return data

    def list_runs(
        self,
        campaign_id: Optional[str] = None,
        site_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """List run summaries, newest first."""
        self._ensure_loaded()
        results = [
            data for data in self._runs.values()
            if (campaign_id is None or data.get("campaign_id") == campaign_id)
            and (site_id is None or data.get("site_id") == site_id)
            and (status is None or data.get("status") == status)
        ]
        results.sort(key=lambda r: r.get("created_at", ""), reverse=True)
        return results[:limit]

    def get_stats(self, site_id: Optional[str] = None, days: int = 30) -> Dict[str, Any]:
        """Aggregate counts and averages over the last *days*."""
        self._ensure_loaded()
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        by_status: Dict[str, int] = defaultdict(int)
        sites_breakdown: Dict[str, Dict[str, int]] = defaultdict(lambda: {"done": 0, "failed": 0, "total": 0})
        scores: List[float] = []
        words: List[int] = []
        flagged = 0
        degraded = 0
        total = 0

        for data in self._runs.values():
            if data.get("created_at", "") < cutoff:
                continue
            run_site = data.get("site_id", "")
            if site_id and run_site != site_id:
                continue
            total += 1
            run_status = data.get("status", "")
            by_status[run_status] += 1
            sites_breakdown[run_site]["total"] += 1
            if run_status in ("done", "failed"):
                sites_breakdown[run_site][run_status] += 1
            if data.get("quality_score") is not None:
                scores.append(data["quality_score"])
            if run_status == RunStatus.DONE.value:
                words.append(data.get("word_count", 0))
            if data.get("flagged_for_review"):
                flagged += 1
            if data.get("degraded_stages"):
                degraded += 1

        done = by_status.get(RunStatus.DONE.value, 0)
        return {
            "period_days": days,
            "site_id": site_id or "all",
            "total_runs": total,
            "by_status": dict(by_status),
            "success_rate": f"{(done / total * 100):.1f}%" if total > 0 else "N/A",
            "avg_quality_score": round(sum(scores) / len(scores), 1) if scores else 0.0,
            "avg_word_count": int(sum(words) / len(words)) if words else 0,
            "flagged_for_review": flagged,
            "runs_with_degraded_stages": degraded,
            "sites_breakdown": dict(sites_breakdown),
            "computed_at": now_iso(),
        }

    def _trim(self) -> None:
        if len(self._runs) <= self.max_runs:
            return
        ordered = sorted(self._runs, key=lambda rid: self._runs[rid].get("created_at", ""))
        for rid in ordered[: len(self._runs) - self.max_runs]:
            del self._runs[rid]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class PipelineOrchestrator:
    """
    Sequences the pipeline stages for single items and batches.

    Parameters
    ----------
    invoker : FallbackInvoker
        Serves research, generation and rewrite.
    ledger : DedupLedger
        Duplicate gate and per-key serialization.
    acquirer : ImageAcquirer
    publisher : Publisher
    sites : SiteRegistry
        Resolves the campaign's target site and its client.
    status_sink : StatusSink, optional
        Receives every status transition. Defaults to logging.
    action_sink : ActionSink, optional
        Receives batch-level progress.
    enrichers : list of Enricher, optional
        Side-pipelines. Defaults to rewrite, linking and schema.
    authors : AuthorDirectory, optional
        Author matching. Without it no author is matched.
    store : RunStore, optional
    """

    def __init__(
        self,
        invoker: FallbackInvoker,
        ledger: DedupLedger,
        acquirer: ImageAcquirer,
        publisher: Publisher,
        sites: SiteRegistry,
        status_sink: Optional[StatusSink] = None,
        action_sink: Optional[ActionSink] = None,
        enrichers: Optional[List[Enricher]] = None,
        authors: Optional[AuthorDirectory] = None,
        store: Optional[RunStore] = None,
    ):
        self.invoker = invoker
        self.ledger = ledger
        self.acquirer = acquirer
        self.publisher = publisher
        self.sites = sites
        self.status_sink = status_sink or LoggingStatusSink()
        self.action_sink = action_sink
        self.enrichers = default_enrichers(invoker) if enrichers is None else enrichers
        self.authors = authors
        self.store = store or RunStore()

    # -- State machine -------------------------------------------------------

    def _transition(self, ctx: RunContext, new: RunStatus) -> None:
        old = RunStatus(ctx.status)
        new = RunStatus(new)
        if not can_transition(old, new):
            raise InvalidTransitionError(old.value, new.value)
        ctx.status = new
        ctx.status_history.append({"status": new.value, "at": now_iso()})
        if new in TERMINAL_STATUSES:
            ctx.completed_at = now_iso()
        safe_notify(self.status_sink.on_transition, ctx, old.value, new.value)

    def _fail(self, ctx: RunContext, exc: Exception) -> None:
        stage = getattr(exc, "stage", None) or _STAGE_LABELS.get(RunStatus(ctx.status), "Pipeline")
        ctx.error = f"{stage}: {str(exc) or type(exc).__name__}"
        if RunStatus(ctx.status) not in TERMINAL_STATUSES:
            self._transition(ctx, RunStatus.FAILED)
        logger.error("Run %s failed [%s]: %s", ctx.run_id[:8], ctx.source_item.topic[:60], ctx.error)

    # -- Single item ---------------------------------------------------------

    async def execute(
        self,
        campaign: Campaign,
        item: SourceItem,
        attempt: int = 1,
        research: Optional[str] = None,
    ) -> RunContext:
        """
        Run one work item end to end.

        *research* from an earlier attempt on the same item is reused as is
        and the research stage is skipped.

        Returns
        -------
        RunContext
            Status ``done``, or ``retry_requested`` when the quality gate
            asks for regeneration.

        Raises
        ------
        DuplicateTopicError
            When the dedup gate skips the topic.
        PipelineError
            Any fatal stage failure (``ctx.error`` holds ``"<Stage>: <msg>"``).
        """
        ctx = RunContext(
            run_id=uuid.uuid4().hex,
            campaign=campaign,
            source_item=item,
            attempt=attempt,
            research=research,
        )
        ctx.status_history.append({"status": RunStatus.PENDING.value, "at": ctx.created_at})
        logger.info(
            "Run %s started: campaign=%s site=%s topic=%r (attempt %d)",
            ctx.run_id[:8], campaign.campaign_id, campaign.site_id, item.topic[:60], attempt,
        )

        async with self.ledger.serialize(campaign.campaign_id, campaign.site_id, item.topic):
            try:
                await self._run_stages(ctx)
            except Exception as exc:
                self._fail(ctx, exc)
                raise
            finally:
                self.store.save_run(ctx)
        return ctx

    async def _run_stages(self, ctx: RunContext) -> None:
        campaign, item = ctx.campaign, ctx.source_item

        site = self.sites.get_site(campaign.site_id)
        ctx.site_name = site.name

        decision = self.ledger.should_skip_topic(
            item.topic, campaign.campaign_id, campaign.site_id,
            check_site_wide=campaign.check_site_wide_duplicates,
        )
        if decision.skip:
            raise DuplicateTopicError(decision.reason, decision)

        if campaign.enable_research and ctx.research is None:
            self._transition(ctx, RunStatus.RESEARCHING)
            ctx.research = await perform_research(self.invoker, item.topic, campaign)
        elif ctx.research is not None:
            logger.debug("Run %s reusing research from attempt %d", ctx.run_id[:8], ctx.attempt - 1)

        self._transition(ctx, RunStatus.GENERATING)
        ctx.content = await generate_content(self.invoker, item, campaign, ctx.research)

        if self.authors is not None:
            ctx.matched_author = self.authors.match(
                item.topic, campaign.niche, campaign.site_id, candidates=campaign.author_ids or None,
            )

        if campaign.enable_images:
            self._transition(ctx, RunStatus.IMAGING)
            try:
                ctx.images = await self.acquirer.acquire(ctx.content.title, campaign, ctx.content.body)
            except Exception as exc:
                logger.warning("Image stage degraded for run %s: %s", ctx.run_id[:8], exc)
                ctx.degrade("images", str(exc) or type(exc).__name__)
                ctx.images = GeneratedImages()
            if ctx.images.failures:
                logger.warning(
                    "Run %s missing image slots: %s", ctx.run_id[:8], ", ".join(ctx.images.failed_slots),
                )

        active = [e for e in self.enrichers if e.enabled(campaign)]
        if active:
            self._transition(ctx, RunStatus.LINKING)
            for enricher in active:
                try:
                    await enricher.apply(ctx)
                except Exception as exc:
                    logger.warning("Side-pipeline %s degraded for run %s: %s", enricher.name, ctx.run_id[:8], exc)
                    ctx.degrade(enricher.name, str(exc) or type(exc).__name__)

        self._transition(ctx, RunStatus.SCORING)
        ctx.quality = score_content(
            ctx.content.body,
            title=ctx.content.title,
            author=ctx.matched_author,
            site_authority=site.domain_authority,
        )
        ctx.review_decision = decide_review(
            ctx.quality.composite,
            ReviewPolicy(enabled=campaign.enable_quality_gate, auto_approve_above=campaign.auto_approve_above),
        )
        publish_decision = should_publish(ctx.review_decision)
        logger.info(
            "Run %s scored %d (%s): %s", ctx.run_id[:8], ctx.quality.composite,
            ctx.quality.grade.value, publish_decision.reason,
        )
        if publish_decision.should_retry:
            self._transition(ctx, RunStatus.RETRY_REQUESTED)
            return
        ctx.flagged_for_review = publish_decision.flagged

        self._transition(ctx, RunStatus.PUBLISHING)
        client = self.sites.get_client(campaign.site_id)
        ctx.publish_result = await self.publisher.publish(client, campaign, ctx)

        self.ledger.record_generated_post(
            campaign.campaign_id,
            campaign.site_id,
            item.topic,
            title=ctx.content.title,
            slug=ctx.content.slug,
            wp_post_id=ctx.publish_result.post_id,
            wp_post_url=ctx.publish_result.post_url,
        )
        self._transition(ctx, RunStatus.DONE)
        logger.info("Run %s published: %s", ctx.run_id[:8], ctx.publish_result.post_url)

    async def execute_with_quality_retries(
        self,
        campaign: Campaign,
        item: SourceItem,
        max_attempts: int = DEFAULT_QUALITY_ATTEMPTS,
    ) -> RunContext:
        """Re-run generation while the quality gate keeps requesting a retry, reusing the first research."""
        ctx = await self.execute(campaign, item, attempt=1)
        attempt = 1
        while RunStatus(ctx.status) == RunStatus.RETRY_REQUESTED and attempt < max_attempts:
            attempt += 1
            logger.info(
                "Quality retry %d/%d for %r (last score %s)",
                attempt, max_attempts, item.topic[:60], ctx.quality.composite if ctx.quality else "n/a",
            )
            ctx = await self.execute(campaign, item, attempt=attempt, research=ctx.research)
        return ctx

    # -- Batch ---------------------------------------------------------------

    async def execute_batch(
        self,
        campaign: Campaign,
        items: List[SourceItem],
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        quality_retries: int = DEFAULT_QUALITY_ATTEMPTS,
    ) -> List[Any]:
        """
        Run many items through a bounded worker pool.

        Returns
        -------
        list
            One entry per item, in input order: the RunContext, or the
            exception that ended that item's run.
        """
        semaphore = asyncio.Semaphore(max(1, max_concurrent))
        sink = self.action_sink
        action_id = safe_notify(
            sink.start_action if sink else None,
            f"Campaign: {campaign.name}", "campaign", True,
        )
        finished = 0

        async def _run_one(item: SourceItem) -> RunContext:
            nonlocal finished
            async with semaphore:
                try:
                    return await self.execute_with_quality_retries(campaign, item, max_attempts=quality_retries)
                finally:
                    finished += 1
                    if sink and action_id:
                        safe_notify(sink.set_progress, action_id, finished, len(items))

        results = await asyncio.gather(*[_run_one(i) for i in items], return_exceptions=True)

        done = sum(1 for r in results if isinstance(r, RunContext) and r.status == RunStatus.DONE)
        skipped = sum(1 for r in results if isinstance(r, DuplicateTopicError))
        failed = len(results) - done - skipped
        for item, outcome in zip(items, results):
            if isinstance(outcome, BaseException) and not isinstance(outcome, DuplicateTopicError):
                logger.error("Batch item %r failed: %s", item.topic[:60], outcome)

        logger.info(
            "Batch complete for %s: %d done, %d skipped, %d not published (of %d)",
            campaign.campaign_id, done, skipped, failed, len(items),
        )
        if sink and action_id:
            message = f"Published {done}/{len(items)} items"
            if failed:
                safe_notify(sink.complete_action, action_id, f"{message} ({failed} not published)")
            else:
                safe_notify(sink.complete_action, action_id, message)
        return list(results)

    # -- Queries -------------------------------------------------------------

    def list_runs(self, **filters: Any) -> List[Dict[str, Any]]:
        return self.store.list_runs(**filters)

    def get_stats(self, site_id: Optional[str] = None, days: int = 30) -> Dict[str, Any]:
        return self.store.get_stats(site_id=site_id, days=days)

    async def close(self) -> None:
        await self.invoker.close()
        await self.publisher.close()
        await self.sites.close()


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_orchestrator: Optional[PipelineOrchestrator] = None


def get_orchestrator() -> PipelineOrchestrator:
    """Build the process-wide orchestrator from environment settings."""
    global _orchestrator
    if _orchestrator is None:
        settings = get_settings()
        invoker = build_default_invoker(settings)
        authors = AuthorDirectory(settings.authors_path)
        _orchestrator = PipelineOrchestrator(
            invoker=invoker,
            ledger=get_ledger(),
            acquirer=ImageAcquirer(invoker),
            publisher=Publisher(authors=authors),
            sites=get_site_registry(),
            authors=authors,
            store=RunStore(settings.runs_path),
        )
    return _orchestrator

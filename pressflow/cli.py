"""
pressflow command line
======================

Usage:
    pressflow run --campaign campaigns.json --topic "Best budget laptops"
    pressflow batch --campaign campaigns.json --topics topics.txt --max-concurrent 3
    pressflow translate --config translate.json --campaign-id tech-es
    pressflow repair --campaign campaigns.json --post-id 42 --title "Budget laptops"
    pressflow score --file article.html
    pressflow dedup list --site techblog
    pressflow dedup clear --days 90
    pressflow runs --status failed --limit 20
    pressflow stats --days 7
    pressflow providers
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from pressflow.config import (
    Campaign,
    SourceItem,
    configure_logging,
    get_settings,
    load_campaigns,
    run_sync,
)
from pressflow.dedup import get_ledger
from pressflow.orchestrator import DuplicateTopicError, RunContext, RunStatus, RunStore, get_orchestrator
from pressflow.providers import Capability, build_default_invoker
from pressflow.quality import decide_review, score_content
from pressflow.tracking import LoggingActionSink
from pressflow.translation import (
    TranslationPipeline,
    TranslationSourceConfig,
    get_translation_history,
    run_translation_campaign_with_status,
)
from pressflow.wordpress_client import get_site_registry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _truncate(text: str, max_len: int = 40) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len - 3] + "..."


def _pick_campaign(path: str, campaign_id: Optional[str]) -> Campaign:
    campaigns = load_campaigns(Path(path))
    if not campaigns:
        raise ValueError(f"No campaigns defined in {path}")
    if campaign_id is None:
        return campaigns[0]
    for campaign in campaigns:
        if campaign.campaign_id == campaign_id:
            return campaign
    raise ValueError(
        f"Campaign '{campaign_id}' not found. Available: {', '.join(c.campaign_id for c in campaigns)}"
    )


def _load_topics(path: str) -> List[SourceItem]:
    """Topics file: a JSON list (strings or SourceItem dicts) or one topic per line."""
    text = Path(path).read_text(encoding="utf-8")
    if text.lstrip().startswith("["):
        entries = json.loads(text)
        return [
            SourceItem(topic=e) if isinstance(e, str) else SourceItem.from_dict(e)
            for e in entries
        ]
    return [SourceItem(topic=line.strip()) for line in text.splitlines() if line.strip()]


def _format_run_summary(ctx: RunContext) -> str:
    data = ctx.summary()
    lines = [
        f"Run ID:    {data['run_id']}",
        f"Campaign:  {data['campaign_id']}",
        f"Site:      {data['site_id']}",
        f"Topic:     {data['topic']}",
        f"Status:    {data['status'].upper()}",
    ]
    if data["title"]:
        lines.append(f"Title:     {data['title']}")
    if data["word_count"]:
        lines.append(f"Words:     {data['word_count']}")
    if data["quality_score"] is not None:
        lines.append(f"Quality:   {data['quality_score']}/100 ({data['grade']})")
    if data["flagged_for_review"]:
        lines.append("Review:    FLAGGED")
    if data["image_count"]:
        lines.append(f"Images:    {data['image_count']}")
    for failure in data["image_failures"]:
        lines.append(f"  image failed [{failure['slot']}]: {failure['error']}")
    for degraded in data["degraded_stages"]:
        lines.append(f"  degraded [{degraded['stage']}]: {degraded['error']}")
    if data["post_url"]:
        lines.append(f"Post:      {data['post_id']} {data['post_url']}")
    if data["error"]:
        lines.append(f"Error:     {data['error']}")
    return "\n".join(lines)


def _format_stats(stats: Dict[str, Any]) -> str:
    lines = [
        f"Pipeline Statistics ({stats.get('period_days', 30)} days)",
        f"Site:            {stats.get('site_id', 'all')}",
        "=" * 50,
        f"Total runs:      {stats.get('total_runs', 0)}",
        f"Success rate:    {stats.get('success_rate', 'N/A')}",
        f"Avg quality:     {stats.get('avg_quality_score', 0):.1f}/100",
        f"Avg word count:  {stats.get('avg_word_count', 0)}",
        f"Flagged:         {stats.get('flagged_for_review', 0)}",
        f"Degraded runs:   {stats.get('runs_with_degraded_stages', 0)}",
    ]
    by_status = stats.get("by_status", {})
    if by_status:
        lines.append("")
        lines.append("By status:")
        for status, count in sorted(by_status.items()):
            lines.append(f"  {status:<18s} {count}")
    breakdown = stats.get("sites_breakdown", {})
    if breakdown:
        lines.append("")
        lines.append("Per-site breakdown:")
        for sid, counts in sorted(breakdown.items()):
            lines.append(f"  {sid:<25s} done={counts['done']} failed={counts['failed']} total={counts['total']}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _cmd_run(args: argparse.Namespace) -> int:
    campaign = _pick_campaign(args.campaign, args.campaign_id)
    item = SourceItem(topic=args.topic, source_url=args.source_url)
    orchestrator = get_orchestrator()
    try:
        ctx = await orchestrator.execute_with_quality_retries(campaign, item, max_attempts=args.quality_retries)
    except DuplicateTopicError as exc:
        print(f"Skipped: {exc}")
        return 0
    except Exception as exc:
        print(f"Run failed: {exc}")
        return 1
    finally:
        await orchestrator.close()
    print(_format_run_summary(ctx))
    return 0 if ctx.status == RunStatus.DONE else 1


async def _cmd_batch(args: argparse.Namespace) -> int:
    campaign = _pick_campaign(args.campaign, args.campaign_id)
    items = _load_topics(args.topics)
    orchestrator = get_orchestrator()
    orchestrator.action_sink = LoggingActionSink()
    try:
        results = await orchestrator.execute_batch(
            campaign, items,
            max_concurrent=args.max_concurrent or get_settings().max_concurrent,
            quality_retries=args.quality_retries,
        )
    finally:
        await orchestrator.close()

    print(f"\nBatch complete: {len(results)} items\n")
    failures = 0
    for item, outcome in zip(items, results):
        if isinstance(outcome, RunContext):
            ok = outcome.status == RunStatus.DONE
            icon = "[OK]" if ok else "[RETRY]"
            detail = outcome.publish_result.post_url if outcome.publish_result else outcome.status.value
            failures += 0 if ok else 1
        elif isinstance(outcome, DuplicateTopicError):
            icon, detail = "[SKIP]", str(outcome)
        else:
            icon, detail = "[FAIL]", str(outcome)
            failures += 1
        print(f"  {icon:<8s} {_truncate(item.topic, 45):<47s} {_truncate(detail, 60)}")
    return 1 if failures else 0


async def _cmd_translate(args: argparse.Namespace) -> int:
    with open(args.config, "r", encoding="utf-8") as fh:
        config = TranslationSourceConfig.from_dict(json.load(fh))
    sites = get_site_registry()
    invoker = build_default_invoker()
    pipeline = TranslationPipeline(
        invoker, sites, history=get_translation_history(), max_concurrent=args.max_concurrent,
    )
    try:
        result = await run_translation_campaign_with_status(
            pipeline, config, args.campaign_id, args.name or args.campaign_id, LoggingActionSink(),
        )
    finally:
        await invoker.close()
        await sites.close()

    summary = result.summary
    print(
        f"\nTranslation {'complete' if result.success else 'finished with errors'}: "
        f"{summary.success_count} published, {summary.failed_count} failed, "
        f"{summary.skipped_count} skipped ({summary.total_posts} posts)"
    )
    for record in result.records:
        print(f"  [{record.status:<9s}] {record.source_post_id:<8d} {record.target_language:<5s} "
              f"{_truncate(record.target_post_url or record.error or '', 60)}")
    for error in result.errors:
        print(f"  error: {error}")
    return 0 if result.success else 1


async def _cmd_repair(args: argparse.Namespace) -> int:
    campaign = _pick_campaign(args.campaign, args.campaign_id)
    orchestrator = get_orchestrator()
    try:
        client = orchestrator.sites.get_client(campaign.site_id)
        result = await orchestrator.publisher.repair_images(
            client, args.post_id, args.title, campaign, orchestrator.acquirer,
        )
    finally:
        await orchestrator.close()
    if result.success:
        print(f"Repaired post {args.post_id}: cover={result.cover_uploaded} inline={result.inline_count}")
        return 0
    print(f"Repair failed for post {args.post_id}: {result.error}")
    return 1


def _cmd_score(args: argparse.Namespace) -> int:
    html = Path(args.file).read_text(encoding="utf-8")
    result = score_content(html, title=args.title or args.file, site_authority=args.authority)
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(result.summary())
        print(f"  Review decision: {decide_review(result.composite).value}")
    return 0


def _cmd_dedup(args: argparse.Namespace) -> int:
    ledger = get_ledger()
    if args.dedup_command == "clear":
        removed = ledger.clear_older_than(args.days)
        print(f"Removed {removed} ledger record(s) older than {args.days} days.")
        return 0

    records = ledger.get_records(campaign_id=args.campaign_id, site_id=args.site, limit=args.limit)
    if not records:
        print("No generated posts recorded.")
        return 0
    print(f"{'Site':<20s} {'Campaign':<20s} {'Post':<8s} {'Title':<45s} {'Created':<20s}")
    print("-" * 115)
    for r in records:
        print(
            f"{r.site_id:<20s} {_truncate(r.campaign_id, 18):<20s} {str(r.wp_post_id or ''):<8s} "
            f"{_truncate(r.title or r.topic, 43):<45s} {r.created_at[:19]:<20s}"
        )
    return 0


def _cmd_runs(args: argparse.Namespace) -> int:
    store = RunStore(get_settings().runs_path)
    if args.run_id:
        run = store.get_run(args.run_id)
        if not run:
            print(f"Run '{args.run_id}' not found.")
            return 1
        print(json.dumps(run, indent=2))
        return 0

    runs = store.list_runs(campaign_id=args.campaign_id, site_id=args.site, status=args.status, limit=args.limit)
    if not runs:
        print("No pipeline runs found.")
        return 0
    print(f"{'ID':<10s} {'Site':<20s} {'Status':<16s} {'Score':<6s} {'Topic':<40s}")
    print("-" * 94)
    for r in runs:
        score = "" if r.get("quality_score") is None else str(r["quality_score"])
        print(
            f"{r['run_id'][:8]:<10s} {r['site_id']:<20s} {r['status']:<16s} {score:<6s} "
            f"{_truncate(r['topic'], 38):<40s}"
        )
    return 0


def _cmd_stats(args: argparse.Namespace) -> int:
    print(_format_stats(RunStore(get_settings().runs_path).get_stats(site_id=args.site, days=args.days)))
    return 0


def _cmd_providers(args: argparse.Namespace) -> int:
    invoker = build_default_invoker()
    print(f"{'Handler':<12s} {'Priority':<9s} {'Available':<10s} Capabilities")
    print("-" * 70)
    for handler in invoker.handlers:
        caps = ", ".join(sorted(c.value for c in handler.capabilities))
        print(f"{handler.handler_id:<12s} {handler.priority:<9d} {str(handler.is_available()):<10s} {caps}")
    print("")
    for capability in Capability:
        order = [h.handler_id for h in invoker.resolve(capability)]
        print(f"  {capability.value:<14s} -> {' > '.join(order) or '(none available)'}")
    run_sync(invoker.close())
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pressflow",
        description="Content pipeline: research, generate, illustrate, score and publish to WordPress",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", help="Pipeline commands")

    # --- run ---
    p_run = subparsers.add_parser("run", help="Run the pipeline for a single topic")
    p_run.add_argument("--campaign", required=True, help="Campaign JSON file")
    p_run.add_argument("--campaign-id", default=None, help="Campaign to use when the file holds several")
    p_run.add_argument("--topic", required=True, help="Topic to write about")
    p_run.add_argument("--source-url", default=None, help="Source URL for the topic")
    p_run.add_argument("--quality-retries", type=int, default=3, help="Max attempts when the quality gate asks for a retry")

    # --- batch ---
    p_batch = subparsers.add_parser("batch", help="Run the pipeline for many topics")
    p_batch.add_argument("--campaign", required=True, help="Campaign JSON file")
    p_batch.add_argument("--campaign-id", default=None)
    p_batch.add_argument("--topics", required=True, help="Topics file (JSON list or one per line)")
    p_batch.add_argument("--max-concurrent", type=int, default=None, help="Worker pool size")
    p_batch.add_argument("--quality-retries", type=int, default=3)

    # --- translate ---
    p_tr = subparsers.add_parser("translate", help="Translate a site's posts into other languages")
    p_tr.add_argument("--config", required=True, help="Translation source config JSON file")
    p_tr.add_argument("--campaign-id", required=True, help="Campaign id recorded on each translation")
    p_tr.add_argument("--name", default=None, help="Display name for progress output")
    p_tr.add_argument("--max-concurrent", type=int, default=None)

    # --- repair ---
    p_repair = subparsers.add_parser("repair", help="Regenerate images for a published post")
    p_repair.add_argument("--campaign", required=True, help="Campaign JSON file")
    p_repair.add_argument("--campaign-id", default=None)
    p_repair.add_argument("--post-id", type=int, required=True)
    p_repair.add_argument("--title", required=True, help="Post title used for image prompts")

    # --- score ---
    p_score = subparsers.add_parser("score", help="Score an HTML article")
    p_score.add_argument("--file", required=True, help="HTML file")
    p_score.add_argument("--title", default=None)
    p_score.add_argument("--authority", type=int, default=None, help="Site domain authority")
    p_score.add_argument("--json", action="store_true", help="Emit JSON")

    # --- dedup ---
    p_dedup = subparsers.add_parser("dedup", help="Inspect or prune the generated-post ledger")
    dedup_sub = p_dedup.add_subparsers(dest="dedup_command")
    p_dlist = dedup_sub.add_parser("list", help="List recorded posts")
    p_dlist.add_argument("--campaign-id", default=None)
    p_dlist.add_argument("--site", default=None)
    p_dlist.add_argument("--limit", type=int, default=50)
    p_dclear = dedup_sub.add_parser("clear", help="Drop records older than N days")
    p_dclear.add_argument("--days", type=int, required=True)

    # --- runs ---
    p_runs = subparsers.add_parser("runs", help="List pipeline runs or show one")
    p_runs.add_argument("--run-id", default=None, help="Show a single run (id or unique prefix)")
    p_runs.add_argument("--campaign-id", default=None)
    p_runs.add_argument("--site", default=None)
    p_runs.add_argument("--status", default=None)
    p_runs.add_argument("--limit", type=int, default=20)

    # --- stats ---
    p_stats = subparsers.add_parser("stats", help="Show pipeline statistics")
    p_stats.add_argument("--site", default=None)
    p_stats.add_argument("--days", type=int, default=30)

    # --- providers ---
    subparsers.add_parser("providers", help="Show registered handlers and fallback order")

    return parser


_ASYNC_COMMANDS = {
    "run": _cmd_run,
    "batch": _cmd_batch,
    "translate": _cmd_translate,
    "repair": _cmd_repair,
}

_SYNC_COMMANDS = {
    "score": _cmd_score,
    "dedup": _cmd_dedup,
    "runs": _cmd_runs,
    "stats": _cmd_stats,
    "providers": _cmd_providers,
}


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command or (args.command == "dedup" and not args.dedup_command):
        parser.print_help()
        sys.exit(1)

    configure_logging("DEBUG" if args.verbose else get_settings().log_level)

    try:
        if args.command in _ASYNC_COMMANDS:
            code = run_sync(_ASYNC_COMMANDS[args.command](args))
        else:
            code = _SYNC_COMMANDS[args.command](args)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()

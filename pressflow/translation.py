"""
Translation Pipeline
====================

Republishes existing posts from a source site into other languages:

    1. Fetch posts from the source site (published only unless disabled)
    2. Skip (post, language, target site) triples already published
    3. Translate via the ``translate`` capability (JSON title/content/excerpt)
    4. Optional post-processing: humanize, readability
    5. Publish to the language's target site

Every attempt is appended to ``translations.json``; a ``published`` entry
makes its triple permanently skippable. Work units run through a bounded
worker pool, each re-checking the history under a per-triple lock.

Usage:
    from pressflow.translation import TranslationPipeline, TranslationSourceConfig

    config = TranslationSourceConfig.from_dict({
        "source_site_id": "techblog",
        "target_languages": [{"language": "es", "target_site_id": "techblog-es"}],
        "post_processing": {"humanize": True},
    })
    result = await TranslationPipeline(invoker, registry).run(config, "tech-es")
    print(result.summary.to_dict())
"""

from __future__ import annotations

import asyncio
import html
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from pressflow.config import _filter_known, get_settings, load_json, now_iso, save_json
from pressflow.dedup import KeyedLocks
from pressflow.enrichment import humanize_html, optimize_readability
from pressflow.generation import PipelineError, strip_code_fences
from pressflow.providers import Capability, FallbackInvoker, InvokeRequest
from pressflow.tracking import ActionSink, safe_notify
from pressflow.wordpress_client import SiteRegistry, WordPressError

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("pressflow.translation")
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

SOURCE_PAGE_SIZE = 50
TRANSLATE_MAX_TOKENS = 16384
MAX_HISTORY_RECORDS = 10000
DEFAULT_MAX_CONCURRENT = 3


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TranslationStatus(str, Enum):
    PENDING = "pending"
    TRANSLATING = "translating"
    PROCESSING = "processing"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    FAILED = "failed"


class ErrorStage(str, Enum):
    FETCH = "fetch"
    TRANSLATE = "translate"
    PROCESS = "process"
    PUBLISH = "publish"


_FAILURE_PREFIXES = {
    ErrorStage.FETCH: "Fetch failed for post",
    ErrorStage.TRANSLATE: "Translation failed for post",
    ErrorStage.PROCESS: "Post-processing failed for post",
    ErrorStage.PUBLISH: "Publish failed for post",
}


class ProgressPhase(str, Enum):
    FETCHING = "fetching"
    TRANSLATING = "translating"
    PROCESSING = "processing"
    PUBLISHING = "publishing"
    COMPLETE = "complete"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class TranslationError(PipelineError):
    stage = "Translation"


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass
class TranslationRecord:
    """One translation attempt for a (source post, language, target site) triple."""

    source_post_id: int
    target_language: str
    target_site_id: str
    source_site_id: str = ""
    source_post_url: str = ""
    source_title: str = ""
    campaign_id: str = ""
    run_id: Optional[str] = None
    record_id: str = ""
    status: str = TranslationStatus.PENDING.value
    character_count: int = 0
    post_processing_applied: Dict[str, bool] = field(default_factory=dict)
    target_post_id: Optional[int] = None
    target_post_url: str = ""
    error: Optional[str] = None
    error_stage: Optional[str] = None
    processing_time_ms: Optional[int] = None
    created_at: str = ""
    translated_at: Optional[str] = None
    completed_at: Optional[str] = None

    def __post_init__(self):
        if not self.record_id:
            self.record_id = uuid.uuid4().hex
        if not self.created_at:
            self.created_at = now_iso()

    @property
    def key(self) -> Tuple[int, str, str]:
        return (self.source_post_id, self.target_language, self.target_site_id)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TranslationRecord:
        return cls(**_filter_known(cls, data))


@dataclass
class LanguageMapping:
    language: str
    target_site_id: str
    language_name: str = ""
    target_category_id: Optional[int] = None
    target_author_id: Optional[int] = None

    @property
    def display_name(self) -> str:
        return self.language_name or self.language


@dataclass
class PostFilters:
    only_published: bool = True
    categories: List[int] = field(default_factory=list)
    after_date: Optional[str] = None


@dataclass
class PostProcessing:
    humanize: bool = False
    optimize_readability: bool = False


@dataclass
class TranslationSourceConfig:
    """Which posts to translate, into which languages, and how to finish them."""

    source_site_id: str
    target_languages: List[LanguageMapping] = field(default_factory=list)
    post_filters: PostFilters = field(default_factory=PostFilters)
    post_processing: PostProcessing = field(default_factory=PostProcessing)
    preferred_handler: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TranslationSourceConfig:
        data = dict(data)
        data["target_languages"] = [
            LanguageMapping(**_filter_known(LanguageMapping, m)) for m in data.get("target_languages", [])
        ]
        data["post_filters"] = PostFilters(**_filter_known(PostFilters, data.get("post_filters") or {}))
        data["post_processing"] = PostProcessing(
            **_filter_known(PostProcessing, data.get("post_processing") or {})
        )
        return cls(**_filter_known(cls, data))


@dataclass
class TranslationProgress:
    phase: str
    message: str
    current_post: Optional[int] = None
    total_posts: Optional[int] = None
    current_language: Optional[str] = None


@dataclass
class TranslatedPost:
    title: str
    content: str
    excerpt: str = ""


@dataclass
class TranslationSummary:
    total_posts: int = 0
    total_translations: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TranslationResult:
    success: bool
    summary: TranslationSummary = field(default_factory=TranslationSummary)
    records: List[TranslationRecord] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "summary": self.summary.to_dict(),
            "records": [r.to_dict() for r in self.records],
            "errors": list(self.errors),
        }


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


def is_already_translated(
    records: List[TranslationRecord],
    source_post_id: int,
    language: str,
    target_site_id: str,
) -> bool:
    """True when the triple has a ``published`` record."""
    return any(
        r.source_post_id == source_post_id
        and r.target_language == language
        and r.target_site_id == target_site_id
        and r.status == TranslationStatus.PUBLISHED.value
        for r in records
    )


def create_translation_record(
    post: Dict[str, Any],
    source_site_id: str,
    language: str,
    target_site_id: str,
    campaign_id: str,
    run_id: Optional[str] = None,
) -> TranslationRecord:
    return TranslationRecord(
        source_post_id=post["id"],
        source_post_url=post.get("link", ""),
        source_title=_rendered(post, "title"),
        source_site_id=source_site_id,
        target_language=language,
        target_site_id=target_site_id,
        campaign_id=campaign_id,
        run_id=run_id,
        character_count=len(_rendered(post, "content", unescape=False)),
    )


def update_translation_status(record: TranslationRecord, status: TranslationStatus, **fields: Any) -> None:
    """Set *status* and any extra fields; terminal statuses stamp ``completed_at``."""
    record.status = TranslationStatus(status).value
    for name, value in fields.items():
        setattr(record, name, value)
    if record.status in (TranslationStatus.PUBLISHED.value, TranslationStatus.FAILED.value):
        record.completed_at = now_iso()


class TranslationHistory:
    """Append-only ledger of translation records in ``translations.json``."""

    def __init__(self, path: Optional[Path] = None, max_records: int = MAX_HISTORY_RECORDS):
        self.path = path or get_settings().translations_path
        self.max_records = max_records
        self._records: List[TranslationRecord] = []
        self._loaded = False
        self._locks = KeyedLocks()

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            raw = load_json(self.path, default=[])
            self._records = [TranslationRecord.from_dict(r) for r in raw] if isinstance(raw, list) else []
            self._loaded = True

    @property
    def records(self) -> List[TranslationRecord]:
        self._ensure_loaded()
        return list(self._records)

    def append(self, record: TranslationRecord) -> None:
        self._ensure_loaded()
        self._records.append(record)
        if len(self._records) > self.max_records:
            # Drop the oldest non-published records first
            overflow = len(self._records) - self.max_records
            kept: List[TranslationRecord] = []
            for r in self._records:
                if overflow and r.status != TranslationStatus.PUBLISHED.value:
                    overflow -= 1
                    continue
                kept.append(r)
            self._records = kept
        save_json(self.path, [r.to_dict() for r in self._records])

    def is_already_translated(self, source_post_id: int, language: str, target_site_id: str) -> bool:
        self._ensure_loaded()
        return is_already_translated(self._records, source_post_id, language, target_site_id)

    @asynccontextmanager
    async def serialize(self, source_post_id: int, language: str, target_site_id: str) -> AsyncIterator[None]:
        async with self._locks.hold((source_post_id, language, target_site_id)):
            yield

    def get_records(
        self,
        campaign_id: Optional[str] = None,
        language: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[TranslationRecord]:
        self._ensure_loaded()
        found = [
            r for r in self._records
            if (campaign_id is None or r.campaign_id == campaign_id)
            and (language is None or r.target_language == language)
            and (status is None or r.status == status)
        ]
        found.sort(key=lambda r: r.created_at, reverse=True)
        return found[:limit]


# ---------------------------------------------------------------------------
# Translation call
# ---------------------------------------------------------------------------


def _rendered(post: Dict[str, Any], key: str, unescape: bool = True) -> str:
    value = post.get(key, "")
    if isinstance(value, dict):
        value = value.get("rendered") or value.get("raw") or ""
    value = value or ""
    return html.unescape(value) if unescape else value


def build_translation_prompt(post: Dict[str, Any], language: str, language_name: str = "") -> str:
    target = f"{language_name} ({language})" if language_name else language
    return (
        f"Translate the following WordPress article into {target}.\n\n"
        "Rules:\n"
        "- Preserve all HTML tags, attributes, links and structure exactly\n"
        "- Translate text content only; keep brand and product names\n"
        "- Use natural, idiomatic phrasing for native readers\n"
        "- Respond with ONLY a JSON object: "
        '{"title": "...", "content": "...", "excerpt": "..."}\n\n'
        f"TITLE:\n{_rendered(post, 'title')}\n\n"
        f"EXCERPT:\n{_rendered(post, 'excerpt', unescape=False)}\n\n"
        f"CONTENT:\n{_rendered(post, 'content', unescape=False)}"
    )


def parse_translation(text: str) -> TranslatedPost:
    """
    Parse a translate handler's JSON reply.

    Raises
    ------
    TranslationError
        If the reply is not JSON or lacks a title or content.
    """
    cleaned = strip_code_fences(text)
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start < 0 or end <= start:
        raise TranslationError("Translation response was not a JSON object")
    try:
        data = json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError as exc:
        raise TranslationError(f"Translation response was not valid JSON: {exc}") from exc
    if not data.get("title") or not data.get("content"):
        raise TranslationError("Translation response missing title or content")
    return TranslatedPost(
        title=str(data["title"]).strip(),
        content=str(data["content"]),
        excerpt=str(data.get("excerpt") or ""),
    )


async def translate_post(
    invoker: FallbackInvoker,
    post: Dict[str, Any],
    language: str,
    language_name: str = "",
    preferred: Optional[str] = None,
) -> TranslatedPost:
    result = await invoker.invoke(
        Capability.TRANSLATE,
        InvokeRequest(
            prompt=build_translation_prompt(post, language, language_name),
            max_tokens=TRANSLATE_MAX_TOKENS,
            topic=_rendered(post, "title"),
        ),
        preferred=preferred,
    )
    if not result.success:
        raise TranslationError(result.error or "Translation failed")
    return parse_translation(result.text)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


ProgressCallback = Callable[[TranslationProgress], None]


class TranslationPipeline:
    """
    Translate and republish a source site's posts.

    Parameters
    ----------
    invoker : FallbackInvoker
        Serves the ``translate`` capability.
    sites : SiteRegistry
        Resolves source and target sites.
    history : TranslationHistory, optional
    max_concurrent : int, optional
        Worker pool size. Defaults to ``Settings.max_concurrent``.
    """

    def __init__(
        self,
        invoker: FallbackInvoker,
        sites: SiteRegistry,
        history: Optional[TranslationHistory] = None,
        max_concurrent: Optional[int] = None,
    ):
        self.invoker = invoker
        self.sites = sites
        self.history = history or TranslationHistory()
        self.max_concurrent = max_concurrent or get_settings().max_concurrent

    async def run(
        self,
        config: TranslationSourceConfig,
        campaign_id: str,
        run_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TranslationResult:
        """
        Translate every matching source post into every configured language.

        Returns
        -------
        TranslationResult
            ``success`` is True only when no unit failed. Never raises for
            per-post failures; they are counted and listed in ``errors``.
        """
        def emit(phase: ProgressPhase, message: str, **extra: Any) -> None:
            safe_notify(on_progress, TranslationProgress(phase=phase.value, message=message, **extra))

        emit(ProgressPhase.FETCHING, "Fetching posts from source site...")
        filters = config.post_filters
        try:
            source_client = self.sites.get_client(config.source_site_id)
            posts = await source_client.list_posts(
                per_page=SOURCE_PAGE_SIZE,
                status="publish" if filters.only_published else "any",
                categories=filters.categories or None,
                after=filters.after_date,
            )
        except WordPressError as exc:
            logger.error("Translation %s: failed to fetch posts: %s", campaign_id, exc)
            return TranslationResult(success=False, errors=[f"Failed to fetch posts: {exc}"])

        summary = TranslationSummary(total_posts=len(posts))
        records: List[TranslationRecord] = []
        errors: List[str] = []
        semaphore = asyncio.Semaphore(max(1, self.max_concurrent))

        async def _unit(index: int, post: Dict[str, Any], mapping: LanguageMapping) -> None:
            position = {"current_post": index + 1, "total_posts": len(posts), "current_language": mapping.language}
            post_id = post.get("id") if isinstance(post, dict) else None
            if post_id is None:
                logger.warning("Translation %s: source post #%d has no id, skipping", campaign_id, index + 1)
                errors.append(f"{_FAILURE_PREFIXES[ErrorStage.FETCH]} #{index + 1}: source post has no id")
                summary.failed_count += 1
                return
            if not self.sites.has_site(mapping.target_site_id):
                errors.append(f"Target site not found for language {mapping.language}")
                summary.failed_count += 1
                return

            async with semaphore, self.history.serialize(post_id, mapping.language, mapping.target_site_id):
                if self.history.is_already_translated(post_id, mapping.language, mapping.target_site_id):
                    logger.debug("Post %s already translated to %s", post_id, mapping.language)
                    summary.skipped_count += 1
                    return

                record = create_translation_record(
                    post, config.source_site_id, mapping.language, mapping.target_site_id, campaign_id, run_id,
                )
                started = time.monotonic()
                stage = ErrorStage.TRANSLATE
                try:
                    update_translation_status(record, TranslationStatus.TRANSLATING)
                    emit(
                        ProgressPhase.TRANSLATING,
                        f'Translating "{record.source_title}" to {mapping.display_name}...',
                        **position,
                    )
                    translated = await translate_post(
                        self.invoker, post, mapping.language, mapping.language_name, config.preferred_handler,
                    )
                    record.translated_at = now_iso()
                    content = translated.content

                    stage = ErrorStage.PROCESS
                    processing = config.post_processing
                    if processing.humanize or processing.optimize_readability:
                        update_translation_status(record, TranslationStatus.PROCESSING)
                    if processing.humanize:
                        emit(ProgressPhase.PROCESSING, "Humanizing content...", **position)
                        content = humanize_html(content)
                        record.post_processing_applied["humanized"] = True
                    if processing.optimize_readability:
                        emit(ProgressPhase.PROCESSING, "Optimizing readability...", **position)
                        content = optimize_readability(content).content
                        record.post_processing_applied["readability_optimized"] = True

                    stage = ErrorStage.PUBLISH
                    update_translation_status(record, TranslationStatus.PUBLISHING)
                    target = self.sites.get_site(mapping.target_site_id)
                    emit(ProgressPhase.PUBLISHING, f"Publishing to {target.name}...", **position)
                    published = await self.sites.get_client(mapping.target_site_id).create_post(
                        title=translated.title,
                        content=content,
                        excerpt=translated.excerpt or None,
                        status="publish",
                        categories=[mapping.target_category_id] if mapping.target_category_id else None,
                        author=mapping.target_author_id,
                    )
                except (TranslationError, WordPressError) as exc:
                    self._fail(record, stage, exc, errors, summary)
                except Exception as exc:
                    logger.exception("Unexpected error translating post %s", post_id)
                    self._fail(record, stage, exc, errors, summary, prefix="Error processing post")
                else:
                    update_translation_status(
                        record,
                        TranslationStatus.PUBLISHED,
                        target_post_id=published.get("id"),
                        target_post_url=published.get("link", ""),
                        processing_time_ms=int((time.monotonic() - started) * 1000),
                    )
                    summary.success_count += 1
                    logger.info(
                        "Translated post %s -> %s on %s: %s",
                        post_id, mapping.language, mapping.target_site_id, record.target_post_url,
                    )
                records.append(record)
                self.history.append(record)

        units = [
            _unit(i, post, mapping)
            for i, post in enumerate(posts)
            for mapping in config.target_languages
        ]
        await asyncio.gather(*units)

        emit(ProgressPhase.COMPLETE, "Translation pipeline complete")
        summary.total_translations = summary.success_count + summary.failed_count + summary.skipped_count
        logger.info(
            "Translation %s complete: %d published, %d failed, %d skipped (%d posts)",
            campaign_id, summary.success_count, summary.failed_count, summary.skipped_count, summary.total_posts,
        )
        return TranslationResult(
            success=summary.failed_count == 0,
            summary=summary,
            records=records,
            errors=errors,
        )

    @staticmethod
    def _fail(
        record: TranslationRecord,
        stage: ErrorStage,
        exc: Exception,
        errors: List[str],
        summary: TranslationSummary,
        prefix: Optional[str] = None,
    ) -> None:
        message = str(exc) or type(exc).__name__
        update_translation_status(record, TranslationStatus.FAILED, error=message, error_stage=stage.value)
        if prefix is None:
            prefix = _FAILURE_PREFIXES[stage]
        errors.append(f"{prefix} {record.source_post_id}: {message}")
        summary.failed_count += 1


# ---------------------------------------------------------------------------
# Action-sink runners
# ---------------------------------------------------------------------------


async def run_translation_campaign_with_status(
    pipeline: TranslationPipeline,
    config: TranslationSourceConfig,
    campaign_id: str,
    campaign_name: str,
    sink: ActionSink,
    run_id: Optional[str] = None,
) -> TranslationResult:
    """
    Run a translation campaign and mirror its progress onto *sink*.

    One step tracks the fetch, then one step per target language.

    Raises
    ------
    Exception
        Whatever the pipeline raised, after ``fail_action`` is reported.
    """
    action_id = safe_notify(sink.start_action, f"Translating: {campaign_name}", "campaign", True) or ""
    fetch_step = safe_notify(sink.add_step, action_id, "Fetching posts from source site...")
    language_steps: Dict[str, str] = {}

    def on_progress(progress: TranslationProgress) -> None:
        phase = progress.phase
        if phase == ProgressPhase.FETCHING.value:
            sink.update_step(action_id, fetch_step, "running", progress.message)
        elif phase == ProgressPhase.TRANSLATING.value:
            if not language_steps:
                sink.update_step(action_id, fetch_step, "completed")
            lang = progress.current_language
            if lang:
                label = f"{lang}: {progress.message}"
                if lang not in language_steps:
                    language_steps[lang] = sink.add_step(action_id, label)
                else:
                    sink.update_step(action_id, language_steps[lang], "running", label)
            if progress.current_post and progress.total_posts:
                sink.set_progress(action_id, progress.current_post, progress.total_posts)
            sink.update_action(action_id, progress.message)
        elif phase == ProgressPhase.PUBLISHING.value:
            lang = progress.current_language
            if lang and lang in language_steps:
                sink.update_step(action_id, language_steps[lang], "running", f"{lang}: {progress.message}")
            sink.update_action(action_id, progress.message)
        elif phase == ProgressPhase.PROCESSING.value:
            sink.update_action(action_id, progress.message)
        elif phase == ProgressPhase.COMPLETE.value:
            for step_id in language_steps.values():
                sink.update_step(action_id, step_id, "completed")

    try:
        result = await pipeline.run(config, campaign_id, run_id=run_id, on_progress=on_progress)
    except Exception as exc:
        safe_notify(sink.fail_action, action_id, str(exc) or "Translation failed")
        raise

    if result.success:
        message = f"Translated {result.summary.success_count}/{result.summary.total_translations} posts"
    else:
        message = f"Completed with {result.summary.failed_count} errors"
    safe_notify(sink.complete_action, action_id, message)
    return result


async def translate_single_post_with_status(
    invoker: FallbackInvoker,
    sites: SiteRegistry,
    post_id: int,
    source_site_id: str,
    language: str,
    target_site_id: str,
    sink: ActionSink,
) -> Dict[str, Any]:
    """
    Translate and publish one post, reporting to *sink*.

    Returns
    -------
    dict
        ``{"success": bool, "post_url": str}`` or ``{"success": False, "error": str}``.
    """
    action_id = safe_notify(
        sink.start_action, f"Translate: post {post_id} -> {language.upper()}", "campaign", True,
    ) or ""
    try:
        safe_notify(sink.update_action, action_id, "Fetching post content...")
        post = await sites.get_client(source_site_id).get_post(post_id)

        safe_notify(sink.update_action, action_id, f"Translating to {language}...")
        translated = await translate_post(invoker, post, language)

        safe_notify(sink.update_action, action_id, "Publishing translated post...")
        published = await sites.get_client(target_site_id).create_post(
            title=translated.title,
            content=translated.content,
            excerpt=translated.excerpt or None,
            status="publish",
        )
    except (TranslationError, WordPressError) as exc:
        safe_notify(sink.fail_action, action_id, str(exc))
        return {"success": False, "error": str(exc)}

    url = published.get("link", "")
    safe_notify(sink.complete_action, action_id, f"Published: {url}")
    return {"success": True, "post_url": url}


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_history: Optional[TranslationHistory] = None


def get_translation_history() -> TranslationHistory:
    global _history
    if _history is None:
        _history = TranslationHistory()
    return _history

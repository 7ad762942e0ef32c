"""
Tests for the translation pipeline, its history ledger and the action-sink
runners.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pressflow.providers import FallbackInvoker, HandlerError
from pressflow.tracking import InMemoryActionSink
from pressflow.translation import (
    TranslationError,
    TranslationHistory,
    TranslationPipeline,
    TranslationRecord,
    TranslationSourceConfig,
    TranslationStatus,
    build_translation_prompt,
    create_translation_record,
    get_translation_history,
    is_already_translated,
    parse_translation,
    run_translation_campaign_with_status,
    translate_single_post_with_status,
    update_translation_status,
)
from pressflow.wordpress_client import SiteConfig, SiteRegistry, WordPressError


# ===================================================================
# Helpers
# ===================================================================

def _post(post_id, title="Budget Tips"):
    return {
        "id": post_id,
        "link": f"https://src.test/{post_id}/",
        "title": {"rendered": title},
        "content": {"rendered": "<p>Hello world</p>"},
        "excerpt": {"rendered": "<p>Hi</p>"},
    }


def _translated(request):
    return json.dumps({"title": f"ES {request.topic}", "content": "<p>Hola mundo</p>", "excerpt": "Hola"})


def _config(**overrides):
    data = {
        "source_site_id": "src",
        "target_languages": [{
            "language": "es", "language_name": "Spanish", "target_site_id": "es-site",
            "target_category_id": 5, "target_author_id": 3,
        }],
    }
    data.update(overrides)
    return TranslationSourceConfig.from_dict(data)


@pytest.fixture
def sites():
    registry = SiteRegistry([
        SiteConfig(site_id=sid, domain=f"{sid}.test", name=name, wp_user="u", app_password="p")
        for sid, name in [("src", "Source"), ("es-site", "Sitio ES"), ("fr-site", "Site FR")]
    ])
    source = registry.get_client("src")
    source.list_posts = AsyncMock(return_value=[_post(42), _post(43, "Saving Money")])
    source.get_post = AsyncMock(return_value=_post(42))
    for target in ("es-site", "fr-site"):
        registry.get_client(target).create_post = AsyncMock(
            return_value={"id": 900, "link": f"https://{target}.test/translated/"},
        )
    return registry


@pytest.fixture
def history(tmp_path):
    return TranslationHistory(tmp_path / "translations.json")


@pytest.fixture
def make_pipeline(fake_handler, sites, history):
    def _make(text=_translated, error=None):
        handler = fake_handler("anthropic", ["translate"], text=text, error=error)
        return TranslationPipeline(FallbackInvoker([handler]), sites, history=history)

    return _make


# ===================================================================
# Parsing & prompts
# ===================================================================

class TestParsing:

    @pytest.mark.unit
    def test_parse_fenced_json(self):
        reply = '```json\n{"title": " Hola ", "content": "<p>x</p>"}\n```'
        translated = parse_translation(reply)
        assert translated.title == "Hola"
        assert translated.content == "<p>x</p>"
        assert translated.excerpt == ""

    @pytest.mark.unit
    @pytest.mark.parametrize("reply", [
        "Lo siento, no puedo.",
        '{"title": "Hola", "content": ',
        '{"title": "Hola"}',
    ])
    def test_parse_rejects_bad_replies(self, reply):
        with pytest.raises(TranslationError):
            parse_translation(reply)

    @pytest.mark.unit
    def test_prompt(self):
        prompt = build_translation_prompt(_post(1, "Tips &amp; Tricks"), "es", "Spanish")
        assert "into Spanish (es)" in prompt
        assert "TITLE:\nTips & Tricks" in prompt
        assert "CONTENT:\n<p>Hello world</p>" in prompt


# ===================================================================
# Records & history
# ===================================================================

class TestRecords:

    @pytest.mark.unit
    def test_create_record(self):
        record = create_translation_record(_post(42, "A &amp; B"), "src", "es", "es-site", "camp-es", run_id="r1")
        assert record.key == (42, "es", "es-site")
        assert record.source_title == "A & B"
        assert record.character_count == len("<p>Hello world</p>")
        assert record.status == "pending"
        assert record.record_id

    @pytest.mark.unit
    def test_terminal_status_stamps_completion(self):
        record = TranslationRecord(source_post_id=1, target_language="es", target_site_id="s")
        update_translation_status(record, TranslationStatus.TRANSLATING)
        assert record.completed_at is None
        update_translation_status(record, TranslationStatus.FAILED, error="x", error_stage="translate")
        assert record.completed_at is not None
        assert record.error_stage == "translate"

    @pytest.mark.unit
    def test_only_published_counts_as_translated(self):
        records = [
            TranslationRecord(source_post_id=42, target_language="es", target_site_id="s1", status="failed"),
            TranslationRecord(source_post_id=42, target_language="fr", target_site_id="s1", status="published"),
        ]
        assert is_already_translated(records, 42, "es", "s1") is False
        assert is_already_translated(records, 42, "fr", "s1") is True
        assert is_already_translated(records, 42, "fr", "s2") is False


class TestHistory:

    @pytest.mark.unit
    def test_persisted(self, tmp_path):
        path = tmp_path / "translations.json"
        TranslationHistory(path).append(
            TranslationRecord(source_post_id=42, target_language="es", target_site_id="s1", status="published"),
        )
        reloaded = TranslationHistory(path)
        assert reloaded.is_already_translated(42, "es", "s1") is True
        assert len(reloaded.records) == 1

    @pytest.mark.unit
    def test_overflow_keeps_published(self, tmp_path):
        history = TranslationHistory(tmp_path / "t.json", max_records=2)
        history.append(TranslationRecord(source_post_id=1, target_language="es", target_site_id="s", status="published"))
        history.append(TranslationRecord(source_post_id=2, target_language="es", target_site_id="s", status="failed"))
        history.append(TranslationRecord(source_post_id=3, target_language="es", target_site_id="s", status="failed"))

        assert [r.source_post_id for r in history.records] == [1, 3]

    @pytest.mark.unit
    def test_get_records_filters(self, history):
        history.append(TranslationRecord(
            source_post_id=1, target_language="es", target_site_id="s", campaign_id="c1", status="published",
        ))
        history.append(TranslationRecord(
            source_post_id=2, target_language="fr", target_site_id="s", campaign_id="c2", status="failed",
        ))
        assert [r.source_post_id for r in history.get_records(language="fr")] == [2]
        assert [r.source_post_id for r in history.get_records(campaign_id="c1", status="published")] == [1]

    @pytest.mark.unit
    def test_singleton_uses_settings_path(self, isolated_settings):
        assert get_translation_history() is get_translation_history()
        assert get_translation_history().path == isolated_settings.translations_path


# ===================================================================
# Pipeline
# ===================================================================

class TestPipeline:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_translates_and_publishes(self, make_pipeline, sites, history):
        progress = []
        result = await make_pipeline().run(_config(), "camp-es", run_id="run-1", on_progress=progress.append)

        assert result.success is True
        assert result.summary.to_dict() == {
            "total_posts": 2, "total_translations": 2, "success_count": 2, "failed_count": 0, "skipped_count": 0,
        }
        assert {r.status for r in result.records} == {"published"}
        assert {r.source_post_id for r in result.records} == {42, 43}
        assert all(r.target_post_url == "https://es-site.test/translated/" for r in result.records)

        create = sites.get_client("es-site").create_post
        assert create.await_count == 2
        kwargs = create.call_args.kwargs
        assert kwargs["status"] == "publish"
        assert kwargs["categories"] == [5]
        assert kwargs["author"] == 3
        assert kwargs["content"] == "<p>Hola mundo</p>"
        assert {c.kwargs["title"] for c in create.call_args_list} == {"ES Budget Tips", "ES Saving Money"}

        assert progress[0].phase == "fetching"
        assert progress[-1].phase == "complete"
        assert history.is_already_translated(42, "es", "es-site") is True

        list_kwargs = sites.get_client("src").list_posts.call_args.kwargs
        assert list_kwargs["status"] == "publish"
        assert list_kwargs["categories"] is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_run_skips_published(self, make_pipeline, sites):
        pipeline = make_pipeline()
        await pipeline.run(_config(), "camp-es")
        result = await pipeline.run(_config(), "camp-es")

        assert result.success is True
        assert result.summary.skipped_count == 2
        assert result.summary.total_translations == 2
        assert result.records == []
        assert sites.get_client("es-site").create_post.await_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_multiple_languages(self, make_pipeline, sites):
        config = _config(target_languages=[
            {"language": "es", "target_site_id": "es-site"},
            {"language": "fr", "target_site_id": "fr-site"},
        ])
        result = await make_pipeline().run(config, "camp-multi")

        assert result.summary.success_count == 4
        assert {r.key for r in result.records} == {
            (42, "es", "es-site"), (43, "es", "es-site"), (42, "fr", "fr-site"), (43, "fr", "fr-site"),
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_translate_failure_is_recorded(self, make_pipeline, history):
        result = await make_pipeline(error=HandlerError("HTTP 500")).run(_config(), "camp-es")

        assert result.success is False
        assert result.summary.failed_count == 2
        assert all(r.status == "failed" and r.error_stage == "translate" for r in result.records)
        assert any(e.startswith("Translation failed for post 42: ") for e in result.errors)
        assert history.is_already_translated(42, "es", "es-site") is False
        assert len(history.records) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publish_failure_stage(self, make_pipeline, sites):
        sites.get_client("es-site").create_post = AsyncMock(side_effect=WordPressError("HTTP 500 from es-site.test"))
        result = await make_pipeline().run(_config(), "camp-es")

        assert result.summary.failed_count == 2
        assert {r.error_stage for r in result.records} == {"publish"}
        assert "Publish failed for post 42: HTTP 500 from es-site.test" in result.errors

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unparseable_reply_fails_translate_stage(self, make_pipeline):
        result = await make_pipeline(text="not json").run(_config(), "camp-es")
        assert {r.error_stage for r in result.records} == {"translate"}
        assert result.summary.failed_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_post_processing(self, make_pipeline, sites):
        reply = json.dumps({"title": "Hola", "content": "<p>Certainly, it is good.</p>"})
        config = _config(post_processing={"humanize": True})
        result = await make_pipeline(text=reply).run(config, "camp-es")

        assert sites.get_client("es-site").create_post.call_args.kwargs["content"] == "<p>It's good.</p>"
        assert all(r.post_processing_applied == {"humanized": True} for r in result.records)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_target_site(self, make_pipeline):
        config = _config(target_languages=[{"language": "xx", "target_site_id": "nowhere"}])
        result = await make_pipeline().run(config, "camp-xx")

        assert result.success is False
        assert result.summary.failed_count == 2
        assert result.errors == ["Target site not found for language xx"] * 2
        assert result.records == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fetch_failure(self, make_pipeline, sites):
        sites.get_client("src").list_posts = AsyncMock(side_effect=WordPressError("boom"))
        result = await make_pipeline().run(_config(), "camp-es")
        assert result.success is False
        assert result.errors == ["Failed to fetch posts: boom"]
        assert result.summary.total_posts == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_post_without_id_fails_fetch_stage_only(self, make_pipeline, sites):
        malformed = _post(0)
        del malformed["id"]
        sites.get_client("src").list_posts = AsyncMock(return_value=[malformed, _post(43, "Saving Money")])

        result = await make_pipeline().run(_config(), "camp-es")

        assert result.success is False
        assert result.summary.failed_count == 1
        assert result.summary.success_count == 1
        assert result.errors == ["Fetch failed for post #1: source post has no id"]
        assert [r.source_post_id for r in result.records] == [43]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_source_site(self, make_pipeline):
        result = await make_pipeline().run(_config(source_site_id="ghost"), "camp-es")
        assert result.success is False
        assert result.errors[0].startswith("Failed to fetch posts: Site 'ghost' not found")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_include_drafts(self, make_pipeline, sites):
        await make_pipeline().run(_config(post_filters={"only_published": False, "categories": [7]}), "c")
        kwargs = sites.get_client("src").list_posts.call_args.kwargs
        assert kwargs["status"] == "any"
        assert kwargs["categories"] == [7]


# ===================================================================
# Action-sink runners
# ===================================================================

class TestActionRunners:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_campaign_success(self, make_pipeline):
        sink = InMemoryActionSink()
        result = await run_translation_campaign_with_status(
            make_pipeline(), _config(), "camp-es", "Spanish rollout", sink,
        )

        assert result.success is True
        action = next(iter(sink.actions.values()))
        assert action.label == "Translating: Spanish rollout"
        assert action.status == "completed"
        assert action.message == "Translated 2/2 posts"
        assert action.steps[0].label == "Fetching posts from source site..."
        assert action.steps[0].status == "completed"
        assert len(action.steps) == 2
        assert action.steps[1].label.startswith("es: ")
        assert action.steps[1].status == "completed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_campaign_with_errors(self, make_pipeline):
        sink = InMemoryActionSink()
        await run_translation_campaign_with_status(
            make_pipeline(error=HandlerError("HTTP 500")), _config(), "camp-es", "Spanish rollout", sink,
        )
        action = next(iter(sink.actions.values()))
        assert action.status == "completed"
        assert action.message == "Completed with 2 errors"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_campaign_exception_fails_action(self):
        sink = InMemoryActionSink()
        pipeline = MagicMock()
        pipeline.run = AsyncMock(side_effect=RuntimeError("kaput"))

        with pytest.raises(RuntimeError):
            await run_translation_campaign_with_status(pipeline, _config(), "c", "Broken", sink)

        action = next(iter(sink.actions.values()))
        assert action.status == "failed"
        assert action.message == "kaput"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_single_post(self, fake_handler, sites):
        sink = InMemoryActionSink()
        invoker = FallbackInvoker([fake_handler("anthropic", ["translate"], text=_translated)])

        outcome = await translate_single_post_with_status(invoker, sites, 42, "src", "es", "es-site", sink)

        assert outcome == {"success": True, "post_url": "https://es-site.test/translated/"}
        action = next(iter(sink.actions.values()))
        assert action.label == "Translate: post 42 -> ES"
        assert action.message == "Published: https://es-site.test/translated/"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_single_post_failure(self, fake_handler, sites):
        sink = InMemoryActionSink()
        invoker = FallbackInvoker([fake_handler("anthropic", ["translate"], text="no json here")])

        with patch.object(sites.get_client("es-site"), "create_post", new=AsyncMock()) as create:
            outcome = await translate_single_post_with_status(invoker, sites, 42, "src", "es", "es-site", sink)

        assert outcome["success"] is False
        assert "JSON" in outcome["error"]
        create.assert_not_awaited()
        assert next(iter(sink.actions.values())).status == "failed"

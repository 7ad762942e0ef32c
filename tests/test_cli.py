"""
Tests for the pressflow command line: argument parsing, helpers and the
command handlers wired through ``main``.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pressflow.cli import (
    _format_run_summary,
    _load_topics,
    _pick_campaign,
    _truncate,
    build_parser,
    main,
)
from pressflow.config import SourceItem
from pressflow.dedup import get_ledger
from pressflow.generation import GeneratedContent
from pressflow.orchestrator import DuplicateTopicError, RunContext, RunStatus, RunStore
from pressflow.publisher import PublishResult


# ===================================================================
# Helpers
# ===================================================================

@pytest.fixture
def campaign_file(tmp_path):
    path = tmp_path / "campaigns.json"
    path.write_text(json.dumps({"campaigns": [
        {"campaign_id": "finance", "site_id": "testsite1", "niche": "personal finance"},
        {"campaign_id": "recipes", "site_id": "testsite2", "niche": "cooking"},
    ]}), encoding="utf-8")
    return path


def _run_main(argv):
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


def _mock_orchestrator(**methods):
    orchestrator = MagicMock()
    orchestrator.close = AsyncMock()
    for name, value in methods.items():
        setattr(orchestrator, name, value)
    return orchestrator


# ===================================================================
# Parser and helpers
# ===================================================================

class TestParser:

    @pytest.mark.unit
    def test_run_arguments(self):
        args = build_parser().parse_args([
            "run", "--campaign", "c.json", "--topic", "Budget laptops", "--quality-retries", "2",
        ])
        assert args.command == "run"
        assert args.topic == "Budget laptops"
        assert args.quality_retries == 2
        assert args.campaign_id is None

    @pytest.mark.unit
    def test_dedup_subcommands(self):
        args = build_parser().parse_args(["dedup", "clear", "--days", "90"])
        assert args.dedup_command == "clear"
        assert args.days == 90

    @pytest.mark.unit
    def test_no_command_prints_help(self, capsys):
        assert _run_main([]) == 1
        assert "usage: pressflow" in capsys.readouterr().out

    @pytest.mark.unit
    def test_dedup_without_subcommand(self):
        assert _run_main(["dedup"]) == 1


class TestHelpers:

    @pytest.mark.unit
    def test_truncate(self):
        assert _truncate("short") == "short"
        assert _truncate("x" * 50, 10) == "xxxxxxx..."

    @pytest.mark.unit
    def test_pick_campaign(self, campaign_file):
        assert _pick_campaign(str(campaign_file), None).campaign_id == "finance"
        assert _pick_campaign(str(campaign_file), "recipes").site_id == "testsite2"
        with pytest.raises(ValueError, match="Available: finance, recipes"):
            _pick_campaign(str(campaign_file), "nope")

    @pytest.mark.unit
    def test_load_topics_lines(self, tmp_path):
        path = tmp_path / "topics.txt"
        path.write_text("Budget laptops\n\n  Cheap monitors  \n", encoding="utf-8")
        assert [t.topic for t in _load_topics(str(path))] == ["Budget laptops", "Cheap monitors"]

    @pytest.mark.unit
    def test_load_topics_json(self, tmp_path):
        path = tmp_path / "topics.json"
        path.write_text(json.dumps([
            "Budget laptops",
            {"topic": "Cheap monitors", "source_url": "https://news.test/monitors"},
        ]), encoding="utf-8")
        items = _load_topics(str(path))
        assert items[0].topic == "Budget laptops"
        assert items[1].source_url == "https://news.test/monitors"

    @pytest.mark.unit
    def test_format_run_summary(self, campaign):
        ctx = RunContext(
            run_id="run-1", campaign=campaign, source_item=SourceItem(topic="Budget tips"),
            status=RunStatus.DONE,
            content=GeneratedContent(title="Budget Tips", body="<p>one two three</p>"),
            publish_result=PublishResult(post_id=42, post_url="https://testsite1.com/budget-tips/"),
        )
        ctx.degrade("linking", "boom")
        text = _format_run_summary(ctx)
        assert "Status:    DONE" in text
        assert "Title:     Budget Tips" in text
        assert "degraded [linking]: boom" in text
        assert "Post:      42 https://testsite1.com/budget-tips/" in text


# ===================================================================
# Commands
# ===================================================================

class TestRunCommand:

    @pytest.mark.unit
    def test_run_success(self, campaign_file, capsys):
        def _execute(campaign, item, max_attempts):
            return RunContext(
                run_id="run-ok", campaign=campaign, source_item=item, status=RunStatus.DONE,
            )

        orchestrator = _mock_orchestrator(execute_with_quality_retries=AsyncMock(side_effect=_execute))
        with patch("pressflow.cli.get_orchestrator", return_value=orchestrator):
            code = _run_main(["run", "--campaign", str(campaign_file), "--topic", "Budget tips"])

        assert code == 0
        kwargs = orchestrator.execute_with_quality_retries.call_args
        assert kwargs.args[0].campaign_id == "finance"
        assert kwargs.args[1].topic == "Budget tips"
        assert kwargs.kwargs["max_attempts"] == 3
        orchestrator.close.assert_awaited_once()
        assert "Run ID:    run-ok" in capsys.readouterr().out

    @pytest.mark.unit
    def test_run_duplicate_is_not_an_error(self, campaign_file, capsys):
        orchestrator = _mock_orchestrator(
            execute_with_quality_retries=AsyncMock(side_effect=DuplicateTopicError("Dedup: Similar to x")),
        )
        with patch("pressflow.cli.get_orchestrator", return_value=orchestrator):
            code = _run_main(["run", "--campaign", str(campaign_file), "--topic", "Budget tips"])
        assert code == 0
        assert "Skipped:" in capsys.readouterr().out

    @pytest.mark.unit
    def test_run_failure_exits_nonzero(self, campaign_file, capsys):
        orchestrator = _mock_orchestrator(
            execute_with_quality_retries=AsyncMock(side_effect=RuntimeError("Generation: exhausted")),
        )
        with patch("pressflow.cli.get_orchestrator", return_value=orchestrator):
            code = _run_main(["run", "--campaign", str(campaign_file), "--topic", "Budget tips"])
        assert code == 1
        assert "Run failed: Generation: exhausted" in capsys.readouterr().out
        orchestrator.close.assert_awaited_once()

    @pytest.mark.unit
    def test_missing_campaign_file(self, tmp_path, capsys):
        code = _run_main(["run", "--campaign", str(tmp_path / "missing.json"), "--topic", "x"])
        assert code == 1
        assert "Error: Campaign file not found" in capsys.readouterr().out


class TestBatchCommand:

    @pytest.mark.unit
    def test_batch_reports_each_item(self, campaign_file, tmp_path, capsys):
        topics = tmp_path / "topics.txt"
        topics.write_text("Budget tips\nSaving hacks\nOld topic\n", encoding="utf-8")

        async def _batch(campaign, items, max_concurrent, quality_retries):
            done = RunContext(
                run_id="r1", campaign=campaign, source_item=items[0], status=RunStatus.DONE,
                publish_result=PublishResult(post_id=1, post_url="https://testsite1.com/budget-tips/"),
            )
            return [done, RuntimeError("Publishing: HTTP 500"), DuplicateTopicError("Dedup: Similar")]

        orchestrator = _mock_orchestrator(execute_batch=AsyncMock(side_effect=_batch))
        with patch("pressflow.cli.get_orchestrator", return_value=orchestrator):
            code = _run_main([
                "batch", "--campaign", str(campaign_file), "--topics", str(topics), "--max-concurrent", "2",
            ])

        out = capsys.readouterr().out
        assert code == 1
        assert "Batch complete: 3 items" in out
        assert "[OK]" in out and "[FAIL]" in out and "[SKIP]" in out
        assert orchestrator.execute_batch.call_args.kwargs["max_concurrent"] == 2


class TestScoreCommand:

    @pytest.mark.unit
    def test_score_text(self, tmp_path, article_html, capsys):
        path = tmp_path / "article.html"
        path.write_text(article_html, encoding="utf-8")
        assert _run_main(["score", "--file", str(path), "--title", "Budget Tips"]) == 0
        out = capsys.readouterr().out
        assert "QUALITY SCORE:" in out
        assert "Review decision:" in out

    @pytest.mark.unit
    def test_score_json(self, tmp_path, article_html, capsys):
        path = tmp_path / "article.html"
        path.write_text(article_html, encoding="utf-8")
        assert _run_main(["score", "--file", str(path), "--json", "--authority", "60"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert 0 <= data["composite"] <= 100

    @pytest.mark.unit
    def test_score_missing_file(self, tmp_path, capsys):
        assert _run_main(["score", "--file", str(tmp_path / "nope.html")]) == 1
        assert "Error:" in capsys.readouterr().out


class TestLedgerCommands:

    @pytest.mark.unit
    def test_dedup_list(self, capsys):
        get_ledger().record_generated_post(
            "finance", "testsite1", "Budget tips", title="Budget Tips", wp_post_id=42,
        )
        assert _run_main(["dedup", "list", "--site", "testsite1"]) == 0
        out = capsys.readouterr().out
        assert "Budget Tips" in out
        assert "42" in out

    @pytest.mark.unit
    def test_dedup_list_empty(self, capsys):
        assert _run_main(["dedup", "list"]) == 0
        assert "No generated posts recorded." in capsys.readouterr().out

    @pytest.mark.unit
    def test_dedup_clear(self, capsys):
        get_ledger().record_generated_post("finance", "testsite1", "Budget tips")
        assert _run_main(["dedup", "clear", "--days", "30"]) == 0
        assert "Removed 0 ledger record(s)" in capsys.readouterr().out


class TestRunsCommands:

    @pytest.fixture
    def stored_runs(self, isolated_settings, campaign):
        store = RunStore(isolated_settings.runs_path)
        for run_id, status in [("abc11111", RunStatus.DONE), ("def22222", RunStatus.FAILED)]:
            store.save_run(RunContext(
                run_id=run_id, campaign=campaign, source_item=SourceItem(topic=f"topic {run_id}"),
                status=status,
            ))
        return store

    @pytest.mark.unit
    def test_list_runs(self, stored_runs, capsys):
        assert _run_main(["runs", "--status", "failed"]) == 0
        out = capsys.readouterr().out
        assert "def22222" in out
        assert "abc11111" not in out

    @pytest.mark.unit
    def test_show_run_by_prefix(self, stored_runs, capsys):
        assert _run_main(["runs", "--run-id", "abc"]) == 0
        assert json.loads(capsys.readouterr().out)["run_id"] == "abc11111"

    @pytest.mark.unit
    def test_unknown_run(self, stored_runs, capsys):
        assert _run_main(["runs", "--run-id", "zzz"]) == 1
        assert "Run 'zzz' not found." in capsys.readouterr().out

    @pytest.mark.unit
    def test_no_runs(self, capsys):
        assert _run_main(["runs"]) == 0
        assert "No pipeline runs found." in capsys.readouterr().out

    @pytest.mark.unit
    def test_stats(self, stored_runs, capsys):
        assert _run_main(["stats", "--days", "7"]) == 0
        out = capsys.readouterr().out
        assert "Pipeline Statistics (7 days)" in out
        assert "Total runs:      2" in out
        assert "testsite1" in out


class TestProvidersCommand:

    @pytest.mark.unit
    def test_lists_handlers(self, capsys):
        assert _run_main(["providers"]) == 0
        out = capsys.readouterr().out
        assert "Handler" in out
        assert "generate" in out

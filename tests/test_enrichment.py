"""
Tests for enrichment side-pipelines and the text post-processing passes.
"""

import json
import re
from types import SimpleNamespace

import pytest

from pressflow.config import AuthorProfile, SourceItem
from pressflow.enrichment import (
    DEFAULT_AUTHOR_NAME,
    EnrichmentError,
    LinkInjector,
    Rewriter,
    SchemaInjector,
    build_article_schema,
    build_faq_schema,
    build_howto_schema,
    default_enrichers,
    extract_faq,
    extract_steps,
    flesch_reading_ease,
    humanize_html,
    inject_links,
    optimize_readability,
    simplify_language,
)
from pressflow.generation import GeneratedContent
from pressflow.images import GeneratedImages, ImageRef
from pressflow.providers import FallbackInvoker, HandlerError


# ===================================================================
# Helpers
# ===================================================================

def _make_ctx(campaign, body, **extra):
    ctx = SimpleNamespace(
        run_id="run-0000-1111",
        campaign=campaign,
        source_item=SourceItem(topic="budget tips"),
        content=GeneratedContent(title="Budget Tips", body=body, excerpt="Save more money."),
        images=None,
        matched_author=None,
        site_name="Test Site One",
    )
    for key, value in extra.items():
        setattr(ctx, key, value)
    return ctx


def _schemas(body):
    return [
        json.loads(block)
        for block in re.findall(r'<script type="application/ld\+json">(.*?)</script>', body, re.DOTALL)
    ]


# ===================================================================
# Humanize / readability
# ===================================================================

class TestHumanize:

    @pytest.mark.unit
    def test_strips_filler_and_contracts(self):
        html = "<p>Certainly, it is important to note that budgets do not work in order to save.</p>"
        assert humanize_html(html) == "<p>Budgets don't work to save.</p>"

    @pytest.mark.unit
    def test_transitions(self):
        assert humanize_html("<p>In conclusion, it is simple.</p>") == "<p>So, it's simple.</p>"
        assert humanize_html("<p>Furthermore, save.</p>") == "<p>Plus, save.</p>"

    @pytest.mark.unit
    def test_tags_and_code_untouched(self):
        html = '<p class="it is">Hello</p><pre>it is not</pre>'
        assert humanize_html(html) == html

    @pytest.mark.unit
    def test_plain_text_unchanged(self):
        html = "<p>Track every expense for a month.</p>"
        assert humanize_html(html) == html


class TestReadability:

    @pytest.mark.unit
    def test_simplify_keeps_case(self):
        assert simplify_language("<p>Utilize it to obtain results.</p>") == "<p>Use it to get results.</p>"

    @pytest.mark.unit
    def test_optimize_reports_improvements(self):
        result = optimize_readability("<p>We utilize numerous tools.</p>")
        assert result.content == "<p>We use many tools.</p>"
        assert "Simplified complex words" in result.improvements
        assert 0 <= result.score <= 100

    @pytest.mark.unit
    def test_optimize_noop(self):
        result = optimize_readability("<p>We use tools.</p>")
        assert result.content == "<p>We use tools.</p>"
        assert result.improvements == []

    @pytest.mark.unit
    def test_flesch_bounds(self):
        assert flesch_reading_ease("") == 0.0
        assert flesch_reading_ease("The cat sat. The dog ran.") > flesch_reading_ease(
            "Institutional macroeconomic considerations necessitate comprehensive reevaluation."
        )


# ===================================================================
# Links
# ===================================================================

class TestInjectLinks:

    @pytest.mark.unit
    def test_links_first_occurrence(self):
        html = "<p>Read our Budget Guide and the savings plan. The budget guide helps.</p>"
        result, added = inject_links(html, {
            "budget guide": "https://s.test/budget/",
            "savings plan": "https://s.test/savings",
        })
        assert added == 2
        assert '<a href="https://s.test/budget/">Budget Guide</a>' in result
        assert result.count("https://s.test/budget/") == 1

    @pytest.mark.unit
    def test_skips_already_linked_url_and_anchor_text(self):
        html = '<p>See <a href="https://s.test/budget">our budget guide</a> now.</p>'
        result, added = inject_links(html, {"budget guide": "https://s.test/budget/"})
        assert added == 0
        assert result == html

        result, added = inject_links(html, {"budget guide": "https://s.test/other"})
        assert added == 0

    @pytest.mark.unit
    def test_respects_max_links(self):
        html = "<p>Try alpha, beta and gamma.</p>"
        _, added = inject_links(html, {"alpha": "/a", "beta": "/b", "gamma": "/c"}, max_links=2)
        assert added == 2

    @pytest.mark.unit
    def test_empty_inputs(self):
        assert inject_links("", {"a": "/a"}) == ("", 0)
        assert inject_links("<p>a</p>", {}) == ("<p>a</p>", 0)


# ===================================================================
# Structured data
# ===================================================================

class TestSchema:

    @pytest.mark.unit
    def test_article_schema(self):
        schema = build_article_schema("T" * 150, "D" * 300, image_url="https://img.test/c.png")
        assert schema["@type"] == "Article"
        assert len(schema["headline"]) == 110
        assert len(schema["description"]) == 200
        assert schema["author"]["name"] == DEFAULT_AUTHOR_NAME
        assert schema["image"] == "https://img.test/c.png"

    @pytest.mark.unit
    def test_extract_faq_from_headings(self, article_html):
        faq = extract_faq(article_html)
        assert [item["question"] for item in faq] == [
            "How much should I save each month?", "Do budgeting apps work?",
        ]
        schema = build_faq_schema(article_html)
        assert schema["@type"] == "FAQPage"
        assert schema["mainEntity"][1]["acceptedAnswer"]["text"] == "They work when you review them weekly."

    @pytest.mark.unit
    def test_extract_faq_bold_questions(self):
        html = "<h2>FAQ</h2><p><strong>Is it free?</strong> Yes it is.</p>"
        assert extract_faq(html) == [{"question": "Is it free?", "answer": "Yes it is."}]

    @pytest.mark.unit
    def test_no_faq(self):
        assert build_faq_schema("<h2>Intro</h2><p>x</p>") is None

    @pytest.mark.unit
    def test_howto_steps(self):
        html = "<ol><li>Mix the flour</li><li>Bake it</li></ol>"
        assert extract_steps(html) == ["Mix the flour", "Bake it"]
        schema = build_howto_schema("Bake Bread", html)
        assert [s["name"] for s in schema["step"]] == ["Step 1", "Step 2"]

        headed = "<h3>Step 1: Mix</h3><p>.</p><h3>Step 2: Bake</h3>"
        assert extract_steps(headed) == ["Mix", "Bake"]
        assert build_howto_schema("x", "<ol><li>Only one</li></ol>") is None


# ===================================================================
# Enrichers
# ===================================================================

class TestEnrichers:

    @pytest.mark.unit
    def test_default_order_and_toggles(self, campaign_factory):
        enrichers = default_enrichers(FallbackInvoker())
        assert [e.name for e in enrichers] == ["rewrite", "linking", "schema"]
        assert [e.enabled(campaign_factory()) for e in enrichers] == [False, False, False]
        campaign = campaign_factory(enable_rewrite=True, enable_linking=True, enable_schema=True)
        assert all(e.enabled(campaign) for e in enrichers)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_link_injector(self, campaign_factory):
        campaign = campaign_factory(internal_links={"emergency fund": "https://testsite1.com/emergency-fund/"})
        ctx = _make_ctx(campaign, "<p>Build an emergency fund first.</p>")
        await LinkInjector().apply(ctx)
        assert 'href="https://testsite1.com/emergency-fund/"' in ctx.content.body

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_schema_injector(self, campaign_factory, article_html):
        author = AuthorProfile(author_id="a1", name="Jane Doe")
        ctx = _make_ctx(
            campaign_factory(), article_html, matched_author=author,
            images=GeneratedImages(cover=ImageRef(url="https://img.test/c.png")),
        )
        injector = SchemaInjector()
        await injector.apply(ctx)

        schemas = _schemas(ctx.content.body)
        assert [s["@type"] for s in schemas] == ["Article", "FAQPage"]
        assert schemas[0]["author"]["name"] == "Jane Doe"
        assert schemas[0]["publisher"]["name"] == "Test Site One"
        assert schemas[0]["image"] == "https://img.test/c.png"

        before = ctx.content.body
        await injector.apply(ctx)
        assert ctx.content.body == before

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_schema_injector_howto(self, campaign_factory):
        ctx = _make_ctx(
            campaign_factory(article_type="how-to"),
            "<p>Intro</p><ol><li>Unplug the faucet</li><li>Replace the washer</li></ol>",
        )
        await SchemaInjector().apply(ctx)
        assert [s["@type"] for s in _schemas(ctx.content.body)] == ["Article", "HowTo"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rewriter_replaces_body(self, fake_handler, campaign):
        original = "<p>" + "word " * 100 + "</p>"
        rewritten = "<p>" + "better " * 95 + "</p>"
        handler = fake_handler("anthropic", ["generate"], text=f"```html\n{rewritten}\n```")
        ctx = _make_ctx(campaign, original)

        await Rewriter(FallbackInvoker([handler])).apply(ctx)

        assert ctx.content.body == rewritten
        assert "ARTICLE:\n" + original in handler.calls[0][1].prompt

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rewriter_rejects_shrunken_output(self, fake_handler, campaign):
        original = "<p>" + "word " * 100 + "</p>"
        handler = fake_handler("anthropic", ["generate"], text="<p>" + "short " * 40 + "</p>")
        ctx = _make_ctx(campaign, original)

        with pytest.raises(EnrichmentError, match="Rewrite rejected"):
            await Rewriter(FallbackInvoker([handler])).apply(ctx)
        assert ctx.content.body == original

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rewriter_provider_failure(self, fake_handler, campaign):
        handler = fake_handler("anthropic", ["generate"], error=HandlerError("HTTP 529"))
        ctx = _make_ctx(campaign, "<p>body</p>")
        with pytest.raises(EnrichmentError, match="Rewrite failed"):
            await Rewriter(FallbackInvoker([handler])).apply(ctx)

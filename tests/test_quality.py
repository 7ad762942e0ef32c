"""
Tests for E-E-A-T quality scoring and the review decision.
"""

import pytest

from pressflow.config import AuthorProfile
from pressflow.quality import (
    Grade,
    ReviewDecision,
    ReviewPolicy,
    classify_domain,
    decide_review,
    extract_citations,
    extract_claims,
    score_content,
    score_to_grade,
    should_publish,
)


# ===================================================================
# Grades
# ===================================================================

class TestGrades:

    @pytest.mark.unit
    @pytest.mark.parametrize("score,grade", [
        (100, Grade.A), (90, Grade.A), (89.9, Grade.B),
        (75, Grade.B), (74, Grade.C), (60, Grade.C),
        (59, Grade.D), (40, Grade.D), (39, Grade.F), (0, Grade.F),
    ])
    def test_inclusive_lower_bounds(self, score, grade):
        assert score_to_grade(score) == grade

    @pytest.mark.unit
    def test_monotonic(self):
        order = ["F", "D", "C", "B", "A"]
        grades = [order.index(score_to_grade(s).value) for s in range(0, 101)]
        assert grades == sorted(grades)


# ===================================================================
# Review decision
# ===================================================================

class TestReviewDecision:

    @pytest.mark.unit
    def test_default_threshold(self):
        assert decide_review(85) == ReviewDecision.APPROVE
        assert decide_review(84) == ReviewDecision.FLAG
        assert decide_review(55) == ReviewDecision.FLAG
        assert decide_review(54) == ReviewDecision.RETRY

    @pytest.mark.unit
    def test_flag_floor_never_below_forty(self):
        policy = ReviewPolicy(auto_approve_above=60)
        assert policy.flag_floor == 40
        assert decide_review(40, policy) == ReviewDecision.FLAG
        assert decide_review(39, policy) == ReviewDecision.RETRY

    @pytest.mark.unit
    def test_disabled_gate_always_approves(self):
        assert decide_review(0, ReviewPolicy(enabled=False)) == ReviewDecision.APPROVE

    @pytest.mark.unit
    def test_retry_blocks_publish(self):
        decision = should_publish(ReviewDecision.RETRY)
        assert decision.publish is False
        assert decision.should_retry is True

    @pytest.mark.unit
    def test_flag_publishes_flagged(self):
        decision = should_publish(ReviewDecision.FLAG)
        assert decision.publish is True
        assert decision.flagged is True
        assert should_publish("approve").flagged is False


# ===================================================================
# Citations & claims
# ===================================================================

class TestCitations:

    @pytest.mark.unit
    def test_domain_tiers(self):
        assert classify_domain("cdc.gov") == "authoritative"
        assert classify_domain("data.census.gov") == "authoritative"
        assert classify_domain("en.wikipedia.org") == "reputable"
        assert classify_domain("somecharity.org") == "reputable"
        assert classify_domain("randomblog.net") == "standard"

    @pytest.mark.unit
    def test_extract_links_and_mentions(self):
        html = (
            '<p>See <a href="https://www.nih.gov/health">NIH</a> and '
            '<a href="#top">top</a> and <a href="/local">local</a>. '
            "According to the Pew Research Center, most adults agree.</p>"
        )
        citations = extract_citations(html)
        linked = [c for c in citations if c.url]
        assert [c.domain for c in linked] == ["nih.gov"]
        assert linked[0].tier == "authoritative"
        assert any(c.text == "the Pew Research Center" for c in citations)

    @pytest.mark.unit
    def test_extract_claims(self):
        claims = extract_claims("Research shows that saving early compounds. Short one. 37% of adults struggle here.")
        categories = [c for _, c in claims]
        assert categories == ["finding", "statistic"]


# ===================================================================
# score_content
# ===================================================================

class TestScoreContent:

    @pytest.mark.unit
    def test_bounded_and_deterministic(self, article_html):
        first = score_content(article_html, title="Budget Tips")
        second = score_content(article_html, title="Budget Tips")
        assert 0 <= first.composite <= 100
        assert first.composite == second.composite
        assert first.grade == score_to_grade(first.composite)
        assert set(first.dimensions) == {"experience", "expertise", "authoritativeness", "trustworthiness"}

    @pytest.mark.unit
    def test_rich_article_beats_thin_article(self, article_html):
        thin = score_content("<p>Budgets are good.</p>")
        rich = score_content(article_html)
        assert rich.composite > thin.composite
        assert rich.citation_count >= 1
        assert rich.dimensions["experience"].score > thin.dimensions["experience"].score

    @pytest.mark.unit
    def test_author_and_site_authority_raise_authoritativeness(self, article_html):
        author = AuthorProfile(
            author_id="a1", name="Jane Doe", bio="Certified financial planner",
            credentials=["CFP"], expertise=["personal finance", "budgeting"],
        )
        baseline = score_content(article_html).dimensions["authoritativeness"].score
        boosted = score_content(article_html, author=author, site_authority=80).dimensions["authoritativeness"].score
        assert boosted > baseline

    @pytest.mark.unit
    def test_zero_site_authority_is_not_replaced_by_default(self, article_html):
        unknown = score_content(article_html).dimensions["authoritativeness"]
        brand_new = score_content(article_html, site_authority=0).dimensions["authoritativeness"]
        assert brand_new.details["domain_authority"] == 0
        assert brand_new.score < unknown.score

    @pytest.mark.unit
    def test_summary_and_dict(self, article_html):
        result = score_content(article_html)
        assert f"QUALITY SCORE: {result.composite}/100" in result.summary()
        data = result.to_dict()
        assert data["grade"] == result.grade.value
        assert len(data["recommendations"]) <= 10

"""
pressflow: campaign content pipeline for WordPress.

Research, article generation, image acquisition, quality gating and
publication, with provider fallback and duplicate prevention. A second
pipeline republishes existing posts into other languages.

Usage:
    from pressflow.orchestrator import get_orchestrator
    from pressflow.config import Campaign, SourceItem

    orchestrator = get_orchestrator()
    ctx = await orchestrator.execute(campaign, SourceItem(topic="Best budget laptops"))
"""

__version__ = "0.1.0"

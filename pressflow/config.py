"""
Configuration for pressflow
===========================

Campaign definitions, work items, and environment-driven settings shared by
every pipeline stage, plus the small JSON persistence helpers the ledgers and
stores use.

Usage:
    from pressflow.config import Campaign, SourceItem, get_settings

    settings = get_settings()
    campaigns = load_campaigns(Path("campaigns.json"))
    item = SourceItem(topic="How to descale an espresso machine")

Environment:
    PRESSFLOW_DATA_DIR        Directory for ledger/run/author JSON files
    PRESSFLOW_SITE_REGISTRY   Path to site-registry.json
    PRESSFLOW_IMAGE_PROXY     Proxy base URL for fetching remote images
    PRESSFLOW_LOG_LEVEL       DEBUG / INFO / WARNING
    PRESSFLOW_MAX_CONCURRENT  Worker pool size for batch and translation runs
    ANTHROPIC_API_KEY, OPENAI_API_KEY, PEXELS_API_KEY, UNSPLASH_ACCESS_KEY
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Coroutine, Dict, List, Optional

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("pressflow.config")
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
# Paths & Constants
# ---------------------------------------------------------------------------

DEFAULT_DATA_DIR = Path.home() / ".pressflow"
DEFAULT_SITE_REGISTRY = Path("configs") / "site-registry.json"

ARTICLE_TYPES = ("guide", "listicle", "how-to", "pillar", "cluster", "review")
IMAGE_STRATEGIES = ("sequential", "parallel_rank")
MEDIA_SOURCE_PREFERENCES = ("ai", "search", "both")
MAX_INLINE_IMAGES = 5


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------


def now_iso() -> str:
    """Return the current UTC timestamp in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


def load_json(path: Path, default: Any = None) -> Any:
    """Load JSON from *path*, returning *default* when missing or corrupt."""
    if default is None:
        default = {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except (FileNotFoundError, json.JSONDecodeError):
        return default


def save_json(path: Path, data: Any) -> None:
    """Atomic JSON write: write to .tmp then os.replace()."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp")
    with open(tmp_path, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2, default=str, ensure_ascii=False)
    os.replace(tmp_path, path)


def run_sync(coro: Coroutine) -> Any:
    """Run an async coroutine synchronously, handling nested event loops."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        import concurrent.futures

        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)


def _filter_known(cls: Any, data: Dict[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in cls.__dataclass_fields__.values()}
    return {k: v for k, v in data.items() if k in known}


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass
class Campaign:
    """
    A content campaign: what to write, for which site, and how.

    A campaign is never mutated by a run. RunContext keeps a reference to it.
    """

    campaign_id: str
    name: str = ""
    site_id: str = ""
    niche: str = ""
    article_type: str = "guide"
    tone: str = "informative"
    target_length: int = 1500
    include_faq: bool = True
    include_toc: bool = False

    # Stage toggles
    enable_research: bool = False
    enable_images: bool = True
    enable_linking: bool = False
    enable_schema: bool = False
    enable_rewrite: bool = False
    enable_quality_gate: bool = True
    auto_approve_above: int = 85
    post_status: str = "publish"

    # Providers
    provider_preferences: Dict[str, str] = field(default_factory=dict)

    # Images
    image_strategy: str = "sequential"
    media_source_preference: str = "both"
    image_provider: str = "openai"
    image_placements: List[str] = field(default_factory=lambda: ["cover"])
    inline_image_count: int = 2

    # Publication
    target_category_id: Optional[int] = None
    target_author_id: Optional[int] = None
    author_mappings: Dict[str, int] = field(default_factory=dict)
    author_ids: List[str] = field(default_factory=list)
    auto_provision_authors: bool = True

    # Enrichment
    internal_links: Dict[str, str] = field(default_factory=dict)

    # Dedup
    check_site_wide_duplicates: bool = False

    def __post_init__(self) -> None:
        if self.article_type not in ARTICLE_TYPES:
            raise ValueError(
                f"Unknown article_type {self.article_type!r}; expected one of {ARTICLE_TYPES}"
            )
        if self.image_strategy not in IMAGE_STRATEGIES:
            raise ValueError(f"Unknown image_strategy {self.image_strategy!r}")
        if self.media_source_preference not in MEDIA_SOURCE_PREFERENCES:
            raise ValueError(
                f"Unknown media_source_preference {self.media_source_preference!r}"
            )
        if not self.name:
            self.name = self.campaign_id

    @property
    def inline_slots(self) -> int:
        """Number of inline image slots to fill (0 when inline placement is off)."""
        if "inline" not in self.image_placements:
            return 0
        return max(0, min(self.inline_image_count, MAX_INLINE_IMAGES))

    def preferred_handler(self, capability: str) -> Optional[str]:
        return self.provider_preferences.get(capability)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Campaign:
        return cls(**_filter_known(cls, data))


@dataclass
class SourceItem:
    """One unit of work: a topic plus optional source material."""

    topic: str
    source_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.topic = (self.topic or "").strip()
        if not self.topic:
            raise ValueError("SourceItem.topic must be a non-empty string")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SourceItem:
        return cls(**_filter_known(cls, data))


@dataclass
class AuthorProfile:
    """A writer persona that can be credited on published posts.

    ``site_mappings`` maps a site id to the WordPress user id the author
    has on that site.
    """

    author_id: str
    name: str
    bio: str = ""
    credentials: List[str] = field(default_factory=list)
    expertise: List[str] = field(default_factory=list)
    email: str = ""
    site_mappings: Dict[str, int] = field(default_factory=dict)

    @property
    def username(self) -> str:
        return "".join(ch for ch in self.name.lower().replace(" ", ".") if ch.isalnum() or ch == ".")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> AuthorProfile:
        return cls(**_filter_known(cls, data))


@dataclass
class Settings:
    """Process-wide settings resolved from the environment."""

    data_dir: Path = DEFAULT_DATA_DIR
    site_registry_path: Path = DEFAULT_SITE_REGISTRY
    image_proxy_url: str = ""
    log_level: str = "INFO"
    max_concurrent: int = 3
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    pexels_api_key: str = ""
    unsplash_access_key: str = ""

    @property
    def ledger_path(self) -> Path:
        return self.data_dir / "ledger.json"

    @property
    def translations_path(self) -> Path:
        return self.data_dir / "translations.json"

    @property
    def runs_path(self) -> Path:
        return self.data_dir / "runs.json"

    @property
    def authors_path(self) -> Path:
        return self.data_dir / "authors.json"

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> Settings:
        """Build settings from environment variables (or a provided mapping)."""
        env = os.environ if environ is None else environ
        try:
            max_concurrent = int(env.get("PRESSFLOW_MAX_CONCURRENT", "3"))
        except ValueError:
            logger.warning(
                "Ignoring non-integer PRESSFLOW_MAX_CONCURRENT=%r",
                env.get("PRESSFLOW_MAX_CONCURRENT"),
            )
            max_concurrent = 3
        return cls(
            data_dir=Path(env.get("PRESSFLOW_DATA_DIR", str(DEFAULT_DATA_DIR))),
            site_registry_path=Path(
                env.get("PRESSFLOW_SITE_REGISTRY", str(DEFAULT_SITE_REGISTRY))
            ),
            image_proxy_url=env.get("PRESSFLOW_IMAGE_PROXY", ""),
            log_level=env.get("PRESSFLOW_LOG_LEVEL", "INFO").upper(),
            max_concurrent=max(1, max_concurrent),
            anthropic_api_key=env.get("ANTHROPIC_API_KEY", ""),
            openai_api_key=env.get("OPENAI_API_KEY", ""),
            pexels_api_key=env.get("PEXELS_API_KEY", ""),
            unsplash_access_key=env.get("UNSPLASH_ACCESS_KEY", ""),
        )


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------


def load_campaigns(path: Path) -> List[Campaign]:
    """
    Load campaign definitions from a JSON file.

    The file may hold a single campaign object, a list of them, or an object
    with a ``campaigns`` list.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ValueError
        If an entry is not a valid campaign.
    """
    if not path.exists():
        raise FileNotFoundError(f"Campaign file not found: {path}")
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)

    if isinstance(data, dict) and "campaigns" in data:
        entries = data["campaigns"]
    elif isinstance(data, dict):
        entries = [data]
    else:
        entries = data

    campaigns = [Campaign.from_dict(entry) for entry in entries]
    logger.info("Loaded %d campaign(s) from %s", len(campaigns), path)
    return campaigns


def configure_logging(level: str) -> None:
    """Apply *level* to every pressflow logger."""
    numeric = getattr(logging, level.upper(), logging.INFO)
    for name, obj in logging.Logger.manager.loggerDict.items():
        if name.startswith("pressflow") and isinstance(obj, logging.Logger):
            obj.setLevel(numeric)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide Settings, reading the environment once."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings

"""
Publisher
=========

Final stage of the pipeline: re-hosts acquired images on the target
WordPress site, places inline images in the article body, resolves which
WordPress user is credited, and creates the post. ``repair_images`` re-runs
only the image portion for a post that went out without them.

Usage:
    from pressflow.publisher import Publisher

    publisher = Publisher()
    result = await publisher.publish(client, campaign, ctx)
    print(result.post_id, result.post_url)

Image fetching:
    URLs on known CDN hosts are fetched directly. Anything else goes through
    the proxy configured by PRESSFLOW_IMAGE_PROXY (``{proxy}?url=<encoded>``)
    and is retried with exponential backoff on not-found and transient
    errors.
"""

from __future__ import annotations

import asyncio
import base64
import html
import io
import logging
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, urlparse

import aiohttp
from PIL import Image, UnidentifiedImageError

from pressflow.config import AuthorProfile, Campaign, get_settings, load_json, save_json
from pressflow.generation import PipelineError
from pressflow.images import GeneratedImages, ImageAcquirer, ImageRef, ImageSlot
from pressflow.retry import DEFAULT_RETRYABLE_CODES, ErrorCode, RetryPolicy
from pressflow.wordpress_client import WordPressClient, WordPressError

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("pressflow.publisher")
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

DIRECT_FETCH_HOSTS = (
    "images.pexels.com",
    "images.unsplash.com",
    "plus.unsplash.com",
    "upload.wikimedia.org",
)

FETCH_MAX_RETRIES = 3
FETCH_TIMEOUT = 30
MATCH_MIN_SCORE = 40

PIL_FORMAT_EXTENSIONS = {
    "JPEG": "jpg",
    "PNG": "png",
    "WEBP": "webp",
    "GIF": "gif",
}

_MATCH_STOPWORDS = {
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "how", "what", "why", "when", "best", "top", "with", "your",
}

_CONCLUSION_HEADING = re.compile(
    r"<h2[^>]*>\s*(?:conclusion|final thoughts|wrapping up|the bottom line|summary)",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PublishError(PipelineError):
    """Raised when the post itself cannot be created."""

    stage = "Publish"


class ImageFetchError(Exception):
    """Raised when an image URL cannot be turned into uploadable bytes."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass
class PublishResult:
    post_id: int
    post_url: str
    status: str = ""
    featured_media_id: Optional[int] = None
    inline_uploaded: int = 0
    author_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RepairResult:
    success: bool
    cover_uploaded: bool = False
    inline_count: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FetchedImage:
    data: bytes
    mime_type: str
    extension: str


@dataclass
class UploadedImage:
    media_id: int
    source_url: str
    alt: str
    slot: str


# ---------------------------------------------------------------------------
# Author directory
# ---------------------------------------------------------------------------


def _topic_terms(text: str) -> List[str]:
    words = re.sub(r"[^a-z0-9\s]", " ", text.lower()).split()
    return [w for w in words if len(w) > 3 and w not in _MATCH_STOPWORDS][:5]


class AuthorDirectory:
    """
    Writer personas stored in ``authors.json``.

    Matching scores each author by how well their expertise covers the
    campaign niche and the topic's significant words.
    """

    def __init__(self, path: Optional[Path] = None, authors: Optional[List[AuthorProfile]] = None):
        self.path = path or get_settings().authors_path
        if authors is not None:
            self._authors = {a.author_id: a for a in authors}
        else:
            raw = load_json(self.path, default=[])
            if isinstance(raw, dict):
                raw = raw.get("authors", [])
            self._authors = {}
            for entry in raw:
                profile = AuthorProfile.from_dict(entry)
                self._authors[profile.author_id] = profile

    def _persist(self) -> None:
        save_json(self.path, [a.to_dict() for a in self._authors.values()])

    def get(self, author_id: str) -> Optional[AuthorProfile]:
        return self._authors.get(author_id)

    def list_authors(self) -> List[AuthorProfile]:
        return list(self._authors.values())

    def score(self, author: AuthorProfile, topic: str, niche: str = "", site_id: Optional[str] = None) -> int:
        expertise = [e.lower() for e in author.expertise]
        points = 0
        niche_l = niche.lower().strip()
        if niche_l and any(niche_l in e or e in niche_l for e in expertise):
            points += 40
        for term in _topic_terms(topic):
            if any(term in e for e in expertise):
                points += 15
        if site_id and site_id in author.site_mappings:
            points += 10
        return min(points, 100)

    def match(
        self,
        topic: str,
        niche: str = "",
        site_id: Optional[str] = None,
        candidates: Optional[List[str]] = None,
    ) -> Optional[AuthorProfile]:
        """
        Return the best-matching author, or None when nobody scores at least 40.

        Parameters
        ----------
        candidates : list of str, optional
            Restrict matching to these author ids (a campaign's ``author_ids``).
        """
        pool = self.list_authors()
        if candidates:
            pool = [a for a in pool if a.author_id in candidates]
        best: Optional[AuthorProfile] = None
        best_score = 0
        for author in pool:
            points = self.score(author, topic, niche, site_id)
            if points > best_score:
                best, best_score = author, points
        if best is None or best_score < MATCH_MIN_SCORE:
            return None
        logger.debug("Matched author %s (score=%d) for %r", best.name, best_score, topic[:60])
        return best

    def set_site_mapping(self, author_id: str, site_id: str, wp_user_id: int) -> None:
        author = self._authors.get(author_id)
        if author is None:
            return
        author.site_mappings[site_id] = wp_user_id
        self._persist()


# ---------------------------------------------------------------------------
# Image fetching
# ---------------------------------------------------------------------------


def sniff_image(data: bytes) -> Tuple[str, str]:
    """
    Identify image bytes with Pillow.

    Returns
    -------
    tuple of (mime_type, extension)

    Raises
    ------
    ImageFetchError
        If the bytes are not a recognizable image.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = (img.format or "").upper()
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ImageFetchError(f"Fetched content is not an image: {exc}") from exc
    mime_type = Image.MIME.get(fmt, "image/jpeg")
    return mime_type, PIL_FORMAT_EXTENSIONS.get(fmt, "jpg")


def is_direct_host(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return any(host == h or host.endswith("." + h) for h in DIRECT_FETCH_HOSTS)


class ImageFetcher:
    """
    Download images for re-upload.

    Parameters
    ----------
    proxy_url : str, optional
        Proxy endpoint. Defaults to ``Settings.image_proxy_url``; when empty,
        non-CDN URLs are fetched directly but still with retries.
    max_retries : int
        Retries for the proxied path.
    base_delay : float
        Initial backoff delay in seconds.
    """

    def __init__(
        self,
        proxy_url: Optional[str] = None,
        max_retries: int = FETCH_MAX_RETRIES,
        base_delay: float = 1.0,
        timeout: int = FETCH_TIMEOUT,
    ):
        self.proxy_url = get_settings().image_proxy_url if proxy_url is None else proxy_url
        self.timeout = timeout
        self.policy = RetryPolicy(
            max_retries=max_retries,
            base_delay=base_delay,
            retryable_codes=set(DEFAULT_RETRYABLE_CODES) | {ErrorCode.E3002},
            module_name="image_fetch",
        )
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": "pressflow/0.1"},
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    def proxied(self, url: str) -> str:
        if not self.proxy_url:
            return url
        return f"{self.proxy_url.rstrip('/')}?url={quote(url, safe='')}"

    async def _download(self, url: str) -> bytes:
        session = await self._get_session()
        async with session.get(url) as resp:
            if resp.status >= 400:
                raise ImageFetchError(f"HTTP {resp.status} fetching {url[:120]}", status_code=resp.status)
            return await resp.read()

    async def fetch(self, url: str) -> FetchedImage:
        """
        Fetch an image and identify its type.

        ``data:`` URLs are decoded in place. Raises ImageFetchError (or the
        last transport error) once every path has failed.
        """
        if url.startswith("data:image"):
            try:
                data = base64.b64decode(url.split(",", 1)[1])
            except (IndexError, ValueError) as exc:
                raise ImageFetchError(f"Malformed data URL: {exc}") from exc
        else:
            data = None
            if is_direct_host(url):
                try:
                    data = await self._download(url)
                except (ImageFetchError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                    logger.warning("Direct fetch failed for %s, trying proxy: %s", url[:120], exc)
            if data is None:
                data = await self.policy.execute(self._download, self.proxied(url))

        mime_type, extension = sniff_image(data)
        return FetchedImage(data=data, mime_type=mime_type, extension=extension)


# ---------------------------------------------------------------------------
# Inline placement
# ---------------------------------------------------------------------------


def _figure(url: str, alt: str) -> str:
    return (
        f'<figure class="wp-block-image size-large">'
        f'<img src="{html.escape(url, quote=True)}" alt="{html.escape(alt, quote=True)}"/>'
        f'</figure>'
    )


def _end_of_paragraph(body: str, start: int) -> Optional[int]:
    idx = body.find("</p>", start)
    return idx + len("</p>") if idx >= 0 else None


def inject_images(body: str, images: List[Tuple[str, str, str]]) -> Tuple[str, int]:
    """
    Insert ``<figure>`` blocks into article HTML at their slots.

    Parameters
    ----------
    body : str
        Article HTML.
    images : list of (url, alt, slot)
        ``after-intro`` goes after the first paragraph; each ``after-h2``
        takes the next H2 section and goes after its first paragraph;
        ``before-conclusion`` goes before the conclusion heading. Images
        with no matching anchor are appended at the end.

    Returns
    -------
    tuple of (html, images_added)
    """
    if not images:
        return body, 0

    h2_starts = [m.start() for m in re.finditer(r"<h2[\s>]", body, re.IGNORECASE)]
    conclusion = _CONCLUSION_HEADING.search(body)
    conclusion_at = conclusion.start() if conclusion else (h2_starts[-1] if len(h2_starts) > 1 else None)
    section_starts = [s for s in h2_starts if conclusion_at is None or s < conclusion_at]
    next_section = 0

    placements: List[Tuple[int, int, str]] = []
    for order, (url, alt, slot) in enumerate(images):
        offset: Optional[int] = None
        if slot == ImageSlot.AFTER_INTRO.value:
            limit = h2_starts[0] if h2_starts else len(body)
            end = _end_of_paragraph(body, 0)
            offset = end if end is not None and end <= limit else (h2_starts[0] if h2_starts else None)
        elif slot == ImageSlot.BEFORE_CONCLUSION.value:
            offset = conclusion_at
        else:
            while next_section < len(section_starts) and offset is None:
                offset = _end_of_paragraph(body, section_starts[next_section])
                next_section += 1
        if offset is None:
            offset = len(body)
        placements.append((offset, order, _figure(url, alt)))

    placements.sort()
    parts: List[str] = []
    cursor = 0
    for offset, _, figure in placements:
        parts.append(body[cursor:offset])
        parts.append("\n" + figure + "\n")
        cursor = offset
    parts.append(body[cursor:])
    return "".join(parts), len(placements)


# ---------------------------------------------------------------------------
# Publisher
# ---------------------------------------------------------------------------


class Publisher:
    """
    Upload media, resolve the author, and create the WordPress post.

    Parameters
    ----------
    fetcher : ImageFetcher, optional
    authors : AuthorDirectory, optional
        Needed for author-profile mappings and auto-provisioning.
    """

    def __init__(self, fetcher: Optional[ImageFetcher] = None, authors: Optional[AuthorDirectory] = None):
        self.fetcher = fetcher or ImageFetcher()
        self.authors = authors

    async def close(self) -> None:
        await self.fetcher.close()

    # -- Media ---------------------------------------------------------------

    async def _upload(self, client: WordPressClient, ref: ImageRef, stem: str) -> Optional[UploadedImage]:
        """Fetch and upload one image. Failures are logged and return None."""
        try:
            fetched = await self.fetcher.fetch(ref.url)
            media = await client.upload_media(
                fetched.data,
                filename=f"{stem}.{fetched.extension}",
                mime_type=fetched.mime_type,
                alt_text=ref.alt,
            )
        except (ImageFetchError, WordPressError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Image upload failed for %s (%s): %s", stem, ref.slot, exc)
            return None
        if not media.get("id"):
            logger.warning("Image upload for %s returned no media id", stem)
            return None
        return UploadedImage(
            media_id=media["id"], source_url=media.get("source_url", ""),
            alt=ref.alt, slot=ref.slot,
        )

    async def _upload_inline(
        self, client: WordPressClient, inline: List[ImageRef], stem: str
    ) -> List[UploadedImage]:
        uploaded = []
        for i, ref in enumerate(inline):
            result = await self._upload(client, ref, f"{stem}-inline-{i + 1}")
            if result is not None:
                uploaded.append(result)
        return uploaded

    # -- Authors -------------------------------------------------------------

    async def resolve_author(
        self,
        client: WordPressClient,
        campaign: Campaign,
        matched: Optional[AuthorProfile],
    ) -> Optional[int]:
        """
        Pick the WordPress user id to credit.

        Order: campaign author mapping for the matched author, the author's
        own mapping for this site, an auto-provisioned user, the campaign's
        target author, then the site default.
        """
        site_id = client.config.site_id
        if matched is not None:
            if matched.author_id in campaign.author_mappings:
                return campaign.author_mappings[matched.author_id]
            if site_id in matched.site_mappings:
                return matched.site_mappings[site_id]
            if campaign.auto_provision_authors:
                provisioned = await self._provision_author(client, matched)
                if provisioned is not None:
                    return provisioned
        if campaign.target_author_id is not None:
            return campaign.target_author_id
        return client.config.default_author_id

    async def _provision_author(self, client: WordPressClient, author: AuthorProfile) -> Optional[int]:
        email = author.email or f"{author.username}@{client.config.domain}"
        try:
            user = await client.ensure_user(
                author.username, email, author.name, description=author.bio,
            )
        except WordPressError as exc:
            logger.warning(
                "Could not provision author %s on %s: %s", author.name, client.config.site_id, exc,
            )
            return None
        user_id = user.get("id")
        if not user_id:
            return None
        author.site_mappings[client.config.site_id] = user_id
        if self.authors is not None:
            self.authors.set_site_mapping(author.author_id, client.config.site_id, user_id)
        logger.info("Provisioned author %s on %s as user %s", author.name, client.config.site_id, user_id)
        return user_id

    # -- Publish -------------------------------------------------------------

    async def publish(self, client: WordPressClient, campaign: Campaign, ctx: Any) -> PublishResult:
        """
        Publish a run's content.

        Parameters
        ----------
        client : WordPressClient
            Client for the campaign's target site.
        campaign : Campaign
        ctx : RunContext
            Must carry ``content``. ``images`` and ``matched_author`` are optional.

        Returns
        -------
        PublishResult

        Raises
        ------
        PublishError
            If there is no content or the post cannot be created.
        """
        content = ctx.content
        if content is None:
            raise PublishError("No content to publish")

        images: GeneratedImages = ctx.images or GeneratedImages()
        body = content.body
        featured_media_id: Optional[int] = None

        if images.cover is not None:
            cover = await self._upload(client, images.cover, f"{content.slug}-cover")
            if cover is not None:
                featured_media_id = cover.media_id

        uploaded_inline: List[UploadedImage] = []
        if images.inline:
            uploaded_inline = await self._upload_inline(client, images.inline, content.slug)
            if uploaded_inline:
                body, added = inject_images(
                    body, [(u.source_url, u.alt, u.slot) for u in uploaded_inline],
                )
                logger.info("Injected %d inline images into %r", added, content.title[:60])

        author_id = await self.resolve_author(client, campaign, getattr(ctx, "matched_author", None))

        try:
            post = await client.create_post(
                title=content.title,
                content=body,
                status=campaign.post_status,
                categories=[campaign.target_category_id] if campaign.target_category_id else None,
                slug=content.slug,
                excerpt=content.excerpt,
                featured_media=featured_media_id,
                author=author_id,
            )
        except WordPressError as exc:
            raise PublishError(f"Failed to create WordPress post: {exc}") from exc

        if not post.get("id"):
            raise PublishError("Failed to create WordPress post: response carried no post id")

        return PublishResult(
            post_id=post["id"],
            post_url=post.get("link", ""),
            status=post.get("status", campaign.post_status),
            featured_media_id=featured_media_id,
            inline_uploaded=len(uploaded_inline),
            author_id=author_id,
        )

    # -- Repair --------------------------------------------------------------

    async def repair_images(
        self,
        client: WordPressClient,
        post_id: int,
        title: str,
        campaign: Campaign,
        acquirer: ImageAcquirer,
    ) -> RepairResult:
        """
        Regenerate and attach images for an already-published post.

        Never raises; failures come back in ``RepairResult.error``.
        """
        try:
            post = await client.get_post(post_id, context="edit")
            content = post.get("content") or {}
            body = content.get("raw") or content.get("rendered") or ""

            images = await acquirer.acquire(title, campaign, content_html=body)
            if images.cover is None:
                reasons = "; ".join(f"{f.slot}: {f.error}" for f in images.failures)
                return RepairResult(
                    success=False,
                    error=f"Image generation failed ({reasons})" if reasons else "Image generation failed",
                )

            cover = await self._upload(client, images.cover, f"retry-{post_id}-cover")
            if cover is None:
                return RepairResult(success=False, error="Failed to upload image to WordPress")

            update: Dict[str, Any] = {"featured_media": cover.media_id}
            uploaded_inline = await self._upload_inline(client, images.inline, f"retry-{post_id}")
            if uploaded_inline and body:
                update["content"], _ = inject_images(
                    body, [(u.source_url, u.alt, u.slot) for u in uploaded_inline],
                )

            await client.update_post(post_id, **update)
            logger.info(
                "Repaired images for post %d on %s: cover=%d inline=%d",
                post_id, client.config.site_id, cover.media_id, len(uploaded_inline),
            )
            return RepairResult(success=True, cover_uploaded=True, inline_count=len(uploaded_inline))
        except WordPressError as exc:
            logger.error("Image repair failed for post %d: %s", post_id, exc)
            return RepairResult(success=False, error=str(exc))

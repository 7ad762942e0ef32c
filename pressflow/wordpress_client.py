"""
WordPress REST Client
=====================

One async client per site for the parts of ``/wp-json/wp/v2`` the pipelines
touch: creating and updating posts, listing source posts for translation,
uploading media and provisioning author users. Transient failures (429, 5xx
and dropped connections) are retried through ``pressflow.retry.RetryPolicy``;
a ``Retry-After`` header stretches the next delay.

Sites come from ``site-registry.json``:
    {"sites": [{"id": "techblog", "domain": "techblog.example",
                "name": "Tech Blog", "language": "en",
                "wp_user": "editor", "wp_app_password_env": "WP_TECHBLOG_PASSWORD",
                "default_author_id": 2, "domain_authority": 45}]}

The application password is read from the environment variable named by
``wp_app_password_env``. A site without one still loads; any request
against it raises ``SiteNotConfiguredError``.

Usage:
    from pressflow.wordpress_client import get_site_registry

    client = get_site_registry().get_client("techblog")
    post = await client.create_post("Title", "<p>Body</p>", status="draft")
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import mimetypes
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiohttp

from pressflow.config import get_settings
from pressflow.retry import RetryPolicy

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("pressflow.wordpress_client")
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

MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds

WP_MAX_PER_PAGE = 100
USER_AGENT = "pressflow/0.1"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class WordPressError(Exception):
    """A failed REST call. ``retry_after`` is set when the site sent a Retry-After header."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        response_body: str = "",
        retry_after: Optional[float] = None,
    ):
        self.status_code = status_code
        self.response_body = response_body
        self.retry_after = retry_after
        super().__init__(message)


class AuthenticationError(WordPressError):
    """401 or 403: bad application password or missing capability."""


class NotFoundError(WordPressError):
    pass


class RateLimitError(WordPressError):
    """429 that outlasted every retry."""


class SiteNotConfiguredError(WordPressError):
    pass


class SiteNotFoundError(WordPressError):
    pass


# ---------------------------------------------------------------------------
# Site configuration
# ---------------------------------------------------------------------------


@dataclass
class SiteConfig:
    site_id: str
    domain: str
    name: str = ""
    language: str = "en"
    wp_user: str = ""
    app_password: str = ""
    default_author_id: Optional[int] = None
    domain_authority: Optional[int] = None
    scheme: str = "https"

    @property
    def api_url(self) -> str:
        return f"{self.scheme}://{self.domain}/wp-json/wp/v2"

    @property
    def auth(self) -> Optional[aiohttp.BasicAuth]:
        if not self.is_configured:
            return None
        return aiohttp.BasicAuth(self.wp_user, self.app_password)

    @property
    def is_configured(self) -> bool:
        return bool(self.wp_user and self.app_password)


def load_site_registry(registry_path: Optional[Path] = None) -> List[SiteConfig]:
    """
    Read every site entry from the registry file.

    Raises
    ------
    FileNotFoundError
        If the file is missing.
    """
    path = registry_path or get_settings().site_registry_path
    if not path.exists():
        logger.error("Site registry not found at %s", path)
        raise FileNotFoundError(f"Site registry not found: {path}")

    with open(path, "r", encoding="utf-8") as fh:
        entries = json.load(fh).get("sites", [])

    sites: List[SiteConfig] = []
    for entry in entries:
        password_env = entry.get("wp_app_password_env", "")
        password = os.getenv(password_env, "") if password_env else ""
        if password_env and not password:
            logger.debug("Site %s has no password in %s", entry.get("id", "?"), password_env)
        sites.append(SiteConfig(
            site_id=entry["id"],
            domain=entry["domain"],
            name=entry.get("name", entry["id"]),
            language=entry.get("language", "en"),
            wp_user=entry.get("wp_user", ""),
            app_password=password,
            default_author_id=entry.get("default_author_id"),
            domain_authority=entry.get("domain_authority"),
            scheme=entry.get("scheme", "https"),
        ))

    logger.info(
        "Loaded %d sites from registry (%d with credentials)",
        len(sites), sum(1 for s in sites if s.is_configured),
    )
    return sites


# ---------------------------------------------------------------------------
# WordPressClient
# ---------------------------------------------------------------------------


def _retry_after(headers: Any) -> Optional[float]:
    value = headers.get("Retry-After") if headers else None
    if not value:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class WordPressClient:
    """
    REST client bound to one site.

    Parameters
    ----------
    config : SiteConfig
    timeout : int
        Total per-request timeout in seconds.
    """

    def __init__(self, config: SiteConfig, timeout: int = 30):
        self.config = config
        self.timeout = timeout
        self.policy = RetryPolicy(
            max_retries=MAX_RETRIES,
            base_delay=RETRY_BASE_DELAY,
            module_name=f"wordpress.{config.site_id}",
        )
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                auth=self.config.auth,
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
                connector=aiohttp.TCPConnector(limit=10, ttl_dns_cache=300),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    # -- Transport ----------------------------------------------------------

    def _error_for(self, status: int, url: str, body: Any, headers: Any) -> WordPressError:
        domain = self.config.domain
        detail = body.get("message", str(body)) if isinstance(body, dict) else body
        if status in (401, 403):
            return AuthenticationError(
                f"Authentication failed for {self.config.site_id} ({domain}): HTTP {status}",
                status_code=status, response_body=str(body),
            )
        if status == 404:
            return NotFoundError(f"Resource not found: {url}", status_code=404, response_body=str(body))
        if status == 429:
            return RateLimitError(
                f"Rate limited by {domain} after {MAX_RETRIES} retries",
                status_code=429, response_body=str(body), retry_after=_retry_after(headers),
            )
        return WordPressError(
            f"HTTP {status} from {domain}: {detail}",
            status_code=status, response_body=str(body), retry_after=_retry_after(headers),
        )

    async def _send(self, method: str, url: str, options: Dict[str, Any]) -> Any:
        """One round trip. Non-2xx responses come back as typed WordPressErrors."""
        session = await self._get_session()
        logger.debug("API %s %s site=%s", method, url, self.config.site_id)
        async with session.request(method, url, **options) as resp:
            try:
                body = await resp.json(content_type=None)
            except ValueError:
                body = await resp.text()
            if resp.status >= 400:
                raise self._error_for(resp.status, url, body, resp.headers)
            return body

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json_data: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Send a request under the client's retry policy and return the decoded body.

        Raises
        ------
        SiteNotConfiguredError
            Before any I/O when the site has no credentials.
        AuthenticationError, NotFoundError
            Immediately, without retrying.
        RateLimitError, WordPressError
            Once retries are exhausted, or at once for other 4xx responses.
        """
        if not self.config.is_configured:
            raise SiteNotConfiguredError(
                f"Site {self.config.site_id!r} ({self.config.domain}) has no credentials configured"
            )

        options: Dict[str, Any] = {}
        if json_data is not None:
            options["json"] = json_data
        if data is not None:
            options["data"] = data
        if headers is not None:
            options["headers"] = headers
        if params is not None:
            options["params"] = {k: v for k, v in params.items() if v is not None}

        try:
            return await self.policy.execute(self._send, method, url, options)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise WordPressError(
                f"Network error after {MAX_RETRIES} retries for "
                f"{self.config.site_id} ({self.config.domain}): {exc}"
            ) from exc

    async def _get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("GET", f"{self.config.api_url}/{endpoint}", params=params)

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Any:
        return await self._request("POST", f"{self.config.api_url}/{endpoint}", json_data=payload)

    # -- Posts --------------------------------------------------------------

    async def create_post(
        self,
        title: str,
        content: str,
        status: str = "draft",
        categories: Optional[List[int]] = None,
        slug: Optional[str] = None,
        excerpt: Optional[str] = None,
        featured_media: Optional[int] = None,
        author: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Create a post; empty optional fields are left out of the payload."""
        payload: Dict[str, Any] = {"title": title, "content": content, "status": status}
        optional = {
            "categories": categories or None,
            "slug": slug or None,
            "excerpt": excerpt or None,
            "featured_media": featured_media,
            "author": author,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})

        post = await self._post("posts", payload)
        logger.info(
            "Created post %s on %s: %s (status=%s)",
            post.get("id"), self.config.site_id, title[:60], status,
        )
        return post

    async def update_post(self, post_id: int, **fields: Any) -> Dict[str, Any]:
        post = await self._post(f"posts/{post_id}", fields)
        logger.info("Updated post %d on %s: %s", post_id, self.config.site_id, sorted(fields))
        return post

    async def get_post(self, post_id: int, context: str = "view") -> Dict[str, Any]:
        return await self._get(f"posts/{post_id}", params={"context": context})

    async def list_posts(
        self,
        per_page: int = 10,
        page: int = 1,
        status: str = "any",
        after: Optional[str] = None,
        categories: Optional[List[int]] = None,
    ) -> List[Dict[str, Any]]:
        """
        One page of posts, newest first.

        Parameters
        ----------
        per_page : int
            Clamped to the REST maximum of 100.
        after : str, optional
            ISO 8601 lower bound on the publish date.
        categories : list of int, optional
            Sent as a comma-joined id list.
        """
        params: Dict[str, Any] = {
            "per_page": min(per_page, WP_MAX_PER_PAGE),
            "page": page,
            "status": status,
            "after": after,
        }
        if categories:
            params["categories"] = ",".join(str(c) for c in categories)

        posts = await self._get("posts", params=params)
        if not isinstance(posts, list):
            return []
        logger.debug("Listed %d posts from %s (page %d)", len(posts), self.config.site_id, page)
        return posts

    # -- Media --------------------------------------------------------------

    async def upload_media(
        self,
        data: Union[bytes, str, Path],
        filename: Optional[str] = None,
        mime_type: Optional[str] = None,
        alt_text: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Upload raw bytes, or a local file, to the media library.

        Alt text goes in a second request since the upload itself is a raw
        body. Raises ValueError for bytes without a filename and
        FileNotFoundError for a missing path.
        """
        if isinstance(data, (str, Path)):
            path = Path(data)
            if not path.exists():
                raise FileNotFoundError(f"Media file not found: {path}")
            filename = filename or path.name
            content = path.read_bytes()
        elif not filename:
            raise ValueError("filename is required when uploading raw bytes")
        else:
            content = data

        mime_type = mime_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        media = await self._request(
            "POST",
            f"{self.config.api_url}/media",
            data=content,
            headers={
                "Content-Type": mime_type,
                "Content-Disposition": f'attachment; filename="{filename}"',
            },
        )
        media_id = media.get("id")
        logger.info(
            "Uploaded %s to %s as media %s (%s)",
            filename, self.config.site_id, media_id, media.get("source_url", ""),
        )

        if alt_text is not None and media_id:
            await self._post(f"media/{media_id}", {"alt_text": alt_text})
        return media

    # -- Users --------------------------------------------------------------

    async def list_users(self, search: Optional[str] = None, per_page: int = 100) -> List[Dict[str, Any]]:
        users = await self._get(
            "users",
            params={"per_page": min(per_page, WP_MAX_PER_PAGE), "search": search, "context": "edit"},
        )
        return users if isinstance(users, list) else []

    async def create_user(
        self,
        username: str,
        email: str,
        name: str,
        description: str = "",
        roles: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        user = await self._post("users", {
            "username": username,
            "email": email,
            "name": name,
            "description": description,
            "roles": roles or ["author"],
            "password": base64.urlsafe_b64encode(os.urandom(24)).decode("ascii"),
        })
        logger.info("Created user %s (id=%s) on %s", username, user.get("id"), self.config.site_id)
        return user

    async def ensure_user(
        self,
        username: str,
        email: str,
        name: str,
        description: str = "",
    ) -> Dict[str, Any]:
        """Return the user matching *username* or *email*, creating an author when absent."""
        for user in await self.list_users(search=username):
            if username in (user.get("slug"), user.get("username")):
                return user
            if email and user.get("email", "").lower() == email.lower():
                return user
        return await self.create_user(username, email, name, description=description)


# ---------------------------------------------------------------------------
# Site registry
# ---------------------------------------------------------------------------


class SiteRegistry:
    """Site lookup plus one lazily created client per site."""

    def __init__(self, sites: Optional[List[SiteConfig]] = None, registry_path: Optional[Path] = None):
        if sites is None:
            sites = load_site_registry(registry_path)
        self._configs: Dict[str, SiteConfig] = {s.site_id: s for s in sites}
        self._clients: Dict[str, WordPressClient] = {}

    def get_site(self, site_id: str) -> SiteConfig:
        try:
            return self._configs[site_id]
        except KeyError:
            available = ", ".join(sorted(self._configs)) or "none"
            raise SiteNotFoundError(
                f"Site '{site_id}' not found in registry. Available: {available}"
            ) from None

    def has_site(self, site_id: str) -> bool:
        return site_id in self._configs

    def get_client(self, site_id: str) -> WordPressClient:
        if site_id not in self._clients:
            self._clients[site_id] = WordPressClient(self.get_site(site_id))
        return self._clients[site_id]

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()


_registry: Optional[SiteRegistry] = None


def get_site_registry() -> SiteRegistry:
    global _registry
    if _registry is None:
        _registry = SiteRegistry()
    return _registry

"""Reddit Integration Module

This module provides the Reddit content source for user analysis: a user's
recent comments (and optionally submissions), plus single-item lookups used
to walk parent chains.

Two access paths:
    Authenticated: Async PRAW with OAuth2 credentials from the environment
    Public: unauthenticated *.json endpoints over httpx, used when credentials
        are not configured or the authenticated fetch fails
"""

import os
from typing import Any, Dict, List, Optional

import asyncpraw
import httpx
import structlog

from botcheck.backend.utils.errors import (
    WARNING_TYPE_PUBLIC_FALLBACK_USED,
    RetryableUpstreamError,
    WarningsCollector,
    retry_with_backoff,
)
from botcheck.models.analysis_models import MAX_ITEMS_LIMIT, ContentItem

# Initialize logger
logger = structlog.get_logger()


PUBLIC_BASE_URL = "https://www.reddit.com"
DEFAULT_USER_AGENT = "botcheck-worker/0.1"
REQUEST_TIMEOUT = 30.0
RETRY_STATUS_CODES = {429, 503}

DELETED_MARKERS = {"[deleted]", "[removed]"}


class ContentSourceError(Exception):
    """Reddit could not be reached or returned an unusable response."""
    pass


def is_deleted(text: Optional[str]) -> bool:
    return text is None or text.strip() in DELETED_MARKERS


def get_reddit_client(
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> asyncpraw.Reddit:
    """Initialize and return an Async PRAW Reddit client with OAuth2.

    Missing arguments are read from environment variables:
    - REDDIT_CLIENT_ID: Reddit application client ID
    - REDDIT_CLIENT_SECRET: Reddit application client secret
    - REDDIT_USER_AGENT: User agent string for API requests

    Returns:
        asyncpraw.Reddit: Configured Reddit client instance

    Raises:
        ValueError: If any required credential is missing or empty
        ContentSourceError: If Async PRAW rejects the configuration
    """
    client_id = (client_id if client_id is not None else os.environ.get('REDDIT_CLIENT_ID', '')).strip()
    client_secret = (client_secret if client_secret is not None else os.environ.get('REDDIT_CLIENT_SECRET', '')).strip()
    user_agent = (user_agent if user_agent is not None else os.environ.get('REDDIT_USER_AGENT', '')).strip()

    missing_vars = []
    if not client_id:
        missing_vars.append('REDDIT_CLIENT_ID')
    if not client_secret:
        missing_vars.append('REDDIT_CLIENT_SECRET')
    if not user_agent:
        missing_vars.append('REDDIT_USER_AGENT')

    if missing_vars:
        raise ValueError(f"Missing required environment variable(s): {', '.join(missing_vars)}")

    try:
        reddit = asyncpraw.Reddit(
            client_id=client_id,
            client_secret=client_secret,
            user_agent=user_agent
        )
    except Exception as e:
        logger.error(
            "reddit_authentication_failed",
            error=str(e),
            error_type=type(e).__name__
        )
        raise ContentSourceError(f"Reddit client initialization failed: {e}") from e

    logger.info("reddit_client_initialized", user_agent=user_agent)
    return reddit


def _absolute_permalink(permalink: Optional[str]) -> str:
    if not permalink:
        return ""
    if permalink.startswith("http"):
        return permalink
    return f"{PUBLIC_BASE_URL}{permalink}"


def item_from_listing_child(child: Dict[str, Any]) -> Optional[ContentItem]:
    """Map one public-listing child ({"kind": "t1"|"t3", "data": {...}}) to a ContentItem."""
    kind = child.get("kind")
    data = child.get("data") or {}
    if kind == "t1":
        return ContentItem(
            id=data.get("id", ""),
            body=data.get("body") or "",
            parent_id=data.get("parent_id"),
            subreddit=data.get("subreddit") or "",
            created_utc=float(data.get("created_utc") or 0.0),
            permalink=_absolute_permalink(data.get("permalink")),
            score=int(data.get("score") or 0),
            kind="comment",
        )
    if kind == "t3":
        return ContentItem(
            id=data.get("id", ""),
            body=data.get("selftext") or "",
            parent_id=None,
            subreddit=data.get("subreddit") or "",
            created_utc=float(data.get("created_utc") or 0.0),
            permalink=_absolute_permalink(data.get("permalink")),
            score=int(data.get("score") or 0),
            kind="post",
            title=data.get("title") or "",
        )
    return None


def item_from_praw(thing) -> ContentItem:
    """Map an Async PRAW Comment or Submission to a ContentItem."""
    if hasattr(thing, "body"):
        return ContentItem(
            id=thing.id,
            body=thing.body or "",
            parent_id=thing.parent_id,
            subreddit=str(thing.subreddit),
            created_utc=float(thing.created_utc),
            permalink=_absolute_permalink(thing.permalink),
            score=int(thing.score),
            kind="comment",
        )
    return ContentItem(
        id=thing.id,
        body=getattr(thing, "selftext", "") or "",
        parent_id=None,
        subreddit=str(thing.subreddit),
        created_utc=float(thing.created_utc),
        permalink=_absolute_permalink(thing.permalink),
        score=int(thing.score),
        kind="post",
        title=thing.title or "",
    )


class RedditContentSource:
    """Fetches a Reddit user's recent items and single items by fullname.

    The Async PRAW handle is created lazily on first use and cached.

    Args:
        client_id / client_secret / user_agent: OAuth2 credentials; read from
            the environment when omitted. Without credentials only the public
            path is used.
        include_submissions: Also fetch the user's submissions
        max_attempts: Total attempts per public request (429/503 are retried)
        base_delay: Backoff base delay in seconds
        transport: Optional httpx transport for the public path (tests)
        reddit: Optional pre-built Async PRAW client
    """

    platform = "reddit"

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        user_agent: Optional[str] = None,
        include_submissions: bool = False,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        reddit: Optional[asyncpraw.Reddit] = None,
    ):
        self._client_id = client_id
        self._client_secret = client_secret
        self._user_agent = user_agent
        self.include_submissions = include_submissions
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._reddit = reddit
        self._reddit_unavailable = False

        public_agent = (user_agent or os.environ.get('REDDIT_USER_AGENT', '')).strip() or DEFAULT_USER_AGENT
        self._http = httpx.AsyncClient(
            base_url=PUBLIC_BASE_URL,
            headers={"User-Agent": public_agent},
            timeout=httpx.Timeout(REQUEST_TIMEOUT),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()
        if self._reddit is not None:
            await self._reddit.close()

    def _get_reddit(self) -> Optional[asyncpraw.Reddit]:
        if self._reddit is not None or self._reddit_unavailable:
            return self._reddit
        try:
            self._reddit = get_reddit_client(self._client_id, self._client_secret, self._user_agent)
        except (ValueError, ContentSourceError) as e:
            logger.info("reddit_authenticated_path_disabled", reason=str(e))
            self._reddit_unavailable = True
        return self._reddit

    async def fetch_user_items(
        self,
        user_id: str,
        limit: int = MAX_ITEMS_LIMIT,
        warnings: Optional[WarningsCollector] = None,
    ) -> List[ContentItem]:
        """Fetch up to ``limit`` of the user's most recent items, newest first.

        Args:
            user_id: Reddit username
            limit: Maximum number of items (capped at 100)
            warnings: Optional collector; records public_fallback_used when the
                authenticated path fails

        Returns:
            list[ContentItem]: Possibly empty

        Raises:
            ContentSourceError: If neither access path could fetch the user's items
        """
        limit = max(1, min(limit, MAX_ITEMS_LIMIT))

        reddit = self._get_reddit()
        if reddit is not None:
            try:
                items = await self._fetch_authenticated(reddit, user_id, limit)
                logger.info("user_items_fetched", user_id=user_id, path="authenticated", count=len(items))
                return items
            except Exception as e:
                logger.warning(
                    "reddit_authenticated_fetch_failed",
                    user_id=user_id,
                    error=str(e),
                    error_type=type(e).__name__
                )
                if warnings is not None:
                    warnings.append(
                        WARNING_TYPE_PUBLIC_FALLBACK_USED,
                        f"Authenticated Reddit fetch failed for {user_id}; used public endpoints",
                        {"user_id": user_id, "error": str(e)},
                    )

        items = await self._fetch_public(user_id, limit)
        logger.info("user_items_fetched", user_id=user_id, path="public", count=len(items))
        return items

    async def _fetch_authenticated(self, reddit: asyncpraw.Reddit, user_id: str, limit: int) -> List[ContentItem]:
        redditor = await reddit.redditor(user_id)
        items: List[ContentItem] = []
        async for comment in redditor.comments.new(limit=limit):
            items.append(item_from_praw(comment))
        if self.include_submissions:
            async for submission in redditor.submissions.new(limit=limit):
                items.append(item_from_praw(submission))
        return self._newest(items, limit)

    async def _fetch_public(self, user_id: str, limit: int) -> List[ContentItem]:
        params = {"limit": limit, "raw_json": 1}
        listing = await self._get_json(f"/user/{user_id}/comments.json", params)
        items = self._items_from_listing(listing)
        if self.include_submissions:
            listing = await self._get_json(f"/user/{user_id}/submitted.json", params)
            items.extend(self._items_from_listing(listing))
        return self._newest(items, limit)

    @staticmethod
    def _newest(items: List[ContentItem], limit: int) -> List[ContentItem]:
        items.sort(key=lambda i: i.created_utc, reverse=True)
        return items[:limit]

    @staticmethod
    def _items_from_listing(listing: Any) -> List[ContentItem]:
        if not isinstance(listing, dict):
            raise ContentSourceError("Unexpected Reddit listing format")
        children = (listing.get("data") or {}).get("children") or []
        items = []
        for child in children:
            item = item_from_listing_child(child)
            if item is not None:
                items.append(item)
        return items

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Any:
        async def _attempt():
            try:
                response = await self._http.get(path, params=params)
            except httpx.TransportError as e:
                raise RetryableUpstreamError(f"Reddit transport error: {e}") from e
            if response.status_code in RETRY_STATUS_CODES:
                raise RetryableUpstreamError(f"Reddit HTTP {response.status_code}", status_code=response.status_code)
            if not response.is_success:
                raise ContentSourceError(f"Reddit fetch failed: HTTP {response.status_code}")
            try:
                return response.json()
            except ValueError as e:
                raise ContentSourceError(f"Reddit returned invalid JSON: {e}") from e

        try:
            return await retry_with_backoff(
                _attempt,
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                operation="reddit_public_get",
            )
        except RetryableUpstreamError as e:
            logger.error("reddit_public_fetch_failed", path=path, error=str(e))
            raise ContentSourceError(f"Reddit unavailable: {e}") from e

    async def fetch_parent(self, ref: str) -> Optional[ContentItem]:
        """Look up one item by fullname (e.g. "t1_abc" or "t3_xyz").

        Returns:
            ContentItem, or None if the item does not exist or was deleted/removed

        Raises:
            ContentSourceError: If Reddit could not be reached
        """
        if not ref or "_" not in ref:
            return None

        reddit = self._get_reddit()
        item: Optional[ContentItem] = None
        if reddit is not None:
            try:
                async for thing in reddit.info(fullnames=[ref]):
                    item = item_from_praw(thing)
                    break
            except Exception as e:
                logger.warning("reddit_authenticated_lookup_failed", ref=ref, error=str(e))
                item = await self._fetch_parent_public(ref)
        else:
            item = await self._fetch_parent_public(ref)

        if item is None:
            return None
        if item.is_post:
            if is_deleted(item.body):
                item.body = ""
            if not item.title and not item.body:
                return None
        elif is_deleted(item.body):
            return None
        return item

    async def _fetch_parent_public(self, ref: str) -> Optional[ContentItem]:
        listing = await self._get_json("/api/info.json", {"id": ref, "raw_json": 1})
        items = self._items_from_listing(listing)
        return items[0] if items else None

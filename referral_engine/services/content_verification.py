"""
Content Verification - Fetch a public post and check it for the referral keyword.

Each platform is scraped by its own Apify actor through the synchronous
run-and-fetch-dataset endpoint. Keyword matching is a case-insensitive
substring check against the post text.
"""

import re
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from structlog import get_logger

from referral_engine.exceptions import ContentVerificationError
from referral_engine.models.api import Platform
from referral_engine.models.domain import ContentVerificationResult

logger = get_logger(__name__)

URL_PATTERNS: dict[Platform, re.Pattern[str]] = {
    Platform.X: re.compile(r"^https?://(?:www\.)?x\.com/?.*", re.IGNORECASE),
    Platform.LINKEDIN: re.compile(r"^https?://(?:[a-z]{2,3}\.)?linkedin\.com/?.*", re.IGNORECASE),
    Platform.THREADS: re.compile(r"^https?://(?:www\.)?threads\.(?:net|com)/?.*", re.IGNORECASE),
    Platform.FACEBOOK: re.compile(r"^https?://(?:www\.)?facebook\.com/?.*", re.IGNORECASE),
}

TWEET_ID_PATTERN = re.compile(r"/status(?:es)?/(\d+)")


class ContentVerifier(Protocol):
    """Anything that can inspect a public post for a keyword."""

    async def verify(
        self, platform: Platform, url: str, keyword: str
    ) -> ContentVerificationResult:
        """
        Fetch the post and report keyword presence plus engagement.

        Raises:
            ContentVerificationError: Post could not be fetched or parsed
        """
        ...


@dataclass(frozen=True)
class ScrapedPost:
    """Text and engagement counters pulled out of one dataset item."""

    text: str
    likes: int
    comments: int
    shares: int


def validate_post_url(platform: Platform, url: str) -> None:
    """
    Raises:
        ContentVerificationError: URL does not belong to the platform
    """
    if not URL_PATTERNS[platform].match(url):
        raise ContentVerificationError(f"Invalid {platform.value} post URL: {url}")


def extract_tweet_id(url: str) -> str:
    match = TWEET_ID_PATTERN.search(url)
    if match is None:
        raise ContentVerificationError(f"Could not extract tweet id from URL: {url}")
    return match.group(1)


def contains_keyword(text: str, keyword: str) -> bool:
    """Case-insensitive substring match."""
    needle = keyword.strip().lower()
    if not needle:
        raise ValueError("keyword cannot be empty")
    return needle in text.lower()


def _count(record: dict[str, Any], key: str) -> int:
    value = record.get(key)
    if isinstance(value, bool) or not isinstance(value, int | float):
        return 0
    return max(int(value), 0)


def _has_text(record: Any) -> bool:
    return (
        isinstance(record, dict)
        and isinstance(record.get("text"), str)
        and bool(record["text"].strip())
    )


def parse_x_item(items: list[Any]) -> ScrapedPost:
    for item in items:
        # The X actor emits placeholder rows with id -1 for missing tweets
        if not _has_text(item) or str(item.get("id")) == "-1":
            continue
        return ScrapedPost(
            text=item["text"],
            likes=_count(item, "likeCount"),
            comments=_count(item, "replyCount"),
            shares=_count(item, "retweetCount"),
        )
    raise ContentVerificationError("Dataset did not contain tweet text")


def parse_linkedin_item(items: list[Any]) -> ScrapedPost:
    for item in items:
        if not _has_text(item):
            continue
        return ScrapedPost(
            text=item["text"],
            likes=_count(item, "numLikes"),
            comments=_count(item, "numComments"),
            shares=_count(item, "numShares"),
        )
    raise ContentVerificationError("Dataset did not contain LinkedIn text")


def parse_threads_item(items: list[Any]) -> ScrapedPost:
    for item in items:
        thread = item.get("thread") if isinstance(item, dict) else None
        if not _has_text(thread):
            continue
        # Threads does not expose a share count
        return ScrapedPost(
            text=thread["text"],
            likes=_count(thread, "like_count"),
            comments=_count(thread, "reply_count"),
            shares=0,
        )
    raise ContentVerificationError("Dataset did not contain Threads text")


def parse_facebook_item(items: list[Any]) -> ScrapedPost:
    for item in items:
        if not _has_text(item):
            continue
        return ScrapedPost(
            text=item["text"],
            likes=_count(item, "likes"),
            comments=_count(item, "comments"),
            shares=_count(item, "shares"),
        )
    raise ContentVerificationError("Dataset did not contain Facebook text")


PARSERS = {
    Platform.X: parse_x_item,
    Platform.LINKEDIN: parse_linkedin_item,
    Platform.THREADS: parse_threads_item,
    Platform.FACEBOOK: parse_facebook_item,
}


def actor_input(platform: Platform, url: str) -> dict[str, Any]:
    """Actor-specific run input for one post URL."""
    if platform == Platform.X:
        return {"tweetIDs": [extract_tweet_id(url)], "maxItems": 1}
    if platform == Platform.LINKEDIN:
        return {"deepScrape": True, "urls": [url]}
    if platform == Platform.THREADS:
        return {"startUrls": [{"url": url}], "proxyConfiguration": {"useApifyProxy": True}}
    return {"startUrls": [{"url": url}], "resultsLimit": 20, "captionText": False}


class ApifyContentVerifier:
    """Content verifier backed by Apify scraping actors."""

    DATASET_LIMIT = 5

    def __init__(
        self,
        api_token: str,
        actor_ids: dict[Platform, str],
        base_url: str = "https://api.apify.com/v2",
        timeout_seconds: float = 120.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.api_token = api_token
        self.actor_ids = actor_ids
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @classmethod
    def from_settings(cls) -> "ApifyContentVerifier":
        from referral_engine.config import settings

        return cls(
            api_token=settings.apify_api_token,
            actor_ids={
                Platform.X: settings.apify_x_actor_id,
                Platform.LINKEDIN: settings.apify_linkedin_actor_id,
                Platform.THREADS: settings.apify_threads_actor_id,
                Platform.FACEBOOK: settings.apify_facebook_actor_id,
            },
            base_url=settings.apify_base_url,
            timeout_seconds=settings.apify_timeout_seconds,
        )

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def verify(
        self, platform: Platform, url: str, keyword: str
    ) -> ContentVerificationResult:
        """Scrape the post and check it for the keyword."""
        platform = Platform(platform)
        validate_post_url(platform, url)
        if not self.api_token:
            raise ContentVerificationError("APIFY_API_TOKEN is not configured")

        items = await self._run_actor(platform, actor_input(platform, url))
        post = PARSERS[platform](items)
        found = contains_keyword(post.text, keyword)

        logger.info(
            "content_verified",
            platform=platform.value,
            url=url,
            contains_keyword=found,
            likes=post.likes,
            comments=post.comments,
            shares=post.shares,
        )

        return ContentVerificationResult(
            contains_keyword=found,
            post_text=post.text,
            likes=post.likes,
            comments=post.comments,
            shares=post.shares,
        )

    async def _run_actor(self, platform: Platform, run_input: dict[str, Any]) -> list[Any]:
        actor_id = self.actor_ids[platform]
        endpoint = f"{self.base_url}/acts/{actor_id}/run-sync-get-dataset-items"

        try:
            response = await self.http_client.post(
                endpoint,
                params={"token": self.api_token, "limit": self.DATASET_LIMIT},
                json=run_input,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "apify_actor_run_failed",
                platform=platform.value,
                actor_id=actor_id,
                status=e.response.status_code,
                text=e.response.text[:500],
            )
            raise ContentVerificationError(
                f"{platform.value} scraper returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            logger.error(
                "apify_actor_request_error",
                platform=platform.value,
                actor_id=actor_id,
                error=str(e),
            )
            raise ContentVerificationError(f"{platform.value} scraper request failed: {e}") from e
        except ValueError as e:
            raise ContentVerificationError(f"{platform.value} scraper returned invalid JSON") from e

        if not isinstance(payload, list):
            raise ContentVerificationError(f"{platform.value} scraper returned no dataset items")
        return payload

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()

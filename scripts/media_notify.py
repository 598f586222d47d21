#!/usr/bin/env python3
"""Post a Slack summary of media links found in a pull request."""
from __future__ import annotations

import argparse
import concurrent.futures
import json
import re
import sys
import time
from enum import StrEnum
from pathlib import Path
from typing import Literal, cast

import requests
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

ODESLI_LINKS_URL = "https://api.song.link/v1-alpha.1/links"
NASA_SEARCH_URL = "https://images-api.nasa.gov/search"
NASA_DETAILS_BASE_URL = "https://images.nasa.gov/details/"
NASA_DETAILS_MARKER = "/details/"
SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"
DEFAULT_HTTP_TIMEOUT = 30.0
HTTP_ERROR_THRESHOLD = 400
SC_TOKEN_SECRET_NAME = "SC_WS_TOKEN"
MASK_CHAR = "*"
MASK_LENGTH = 8
MASKED_TOKEN = MASK_CHAR * MASK_LENGTH
NASA_THUMBNAIL_ALT_TEXT = "NASA media thumbnail"
UNKNOWN_AUTHOR = "unknown"
UNKNOWN_REF = "?"

SOUNDCLOUD_PATTERN = re.compile(
    r"(https?://(?:www\.)?soundcloud\.com/[^\s)]+)",
    re.IGNORECASE,
)
# The ID segment may be empty; such links are detected but not looked up.
NASA_PATTERN = re.compile(
    r"(https?://(?:www\.)?images\.nasa\.gov/details/[^\s)]*)",
    re.IGNORECASE,
)
YOUTUBE_PATTERN = re.compile(
    r"(https?://(?:www\.)?(?:youtube\.com/watch\?v=|youtu\.be/)[^\s)]+)",
    re.IGNORECASE,
)
YOUTUBE_ID_PATTERN = re.compile(r"(?:[?&]v=|youtu\.be/)([^&?#/\s)]+)", re.IGNORECASE)

# (display name, Odesli linksByPlatform key), in display order.
PLATFORM_PREFERENCE: tuple[tuple[str, str], ...] = (
    ("Spotify", "spotify"),
    ("Apple Music", "appleMusic"),
    ("YouTube", "youtube"),
    ("SoundCloud", "soundcloud"),
)

SNIPPET_HEADING = "*SoundCloud WebSocket snippet (masked token):*"
SNIPPET_SKIPPED_NOTE = "_No SC WebSocket token provided; skipping snippet._"
SNIPPET_LINES = (
    "```js",
    "const signalingChannel = new WebSocket(",
    f"  'wss://api.soundcloud.com/realtime?token={MASKED_TOKEN}'",
    ");",
    "",
    "signalingChannel.onopen = () => {",
    "  console.log('WebSocket connection opened.');",
    "};",
    "",
    "signalingChannel.onmessage = (event) => {",
    "  console.log('Received:', event.data);",
    "};",
    "```",
    "",
    "_Runtime note: The real token is injected at runtime from the secret "
    f"`{SC_TOKEN_SECRET_NAME}`, not shown here._",
)
SONGLINK_UNRESOLVED_NOTE = "_Songlink could not be resolved_"

JSONDict = dict[str, object]
JSONList = list[object]


def ensure_dict(value: object, context: str) -> JSONDict:
    """Return a dictionary value or raise."""
    if isinstance(value, dict):
        return cast("JSONDict", value)
    raise TypeError(context)


def ensure_list(value: object, context: str) -> JSONList:
    """Return a list value or raise."""
    if isinstance(value, list):
        return cast("JSONList", value)
    raise TypeError(context)


def optional_str(value: object, default: str = "") -> str:
    """Return a non-empty string value or a default."""
    if isinstance(value, str) and value:
        return value
    return default


def escape_mrkdwn(text: str) -> str:
    """Escape the characters Slack reserves for links and mentions."""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


class NotifierError(RuntimeError):
    """Base class for errors that abort a notifier run."""


class ConfigurationError(NotifierError):
    """Raised when required configuration or the event file is unusable."""


class SlackDeliveryError(NotifierError):
    """Raised when Slack rejects or never receives the message."""

    def __init__(self, reason: str) -> None:
        """Create a Slack delivery error."""
        super().__init__(f"Slack post failed: {reason}")
        self.reason = reason


class Settings(BaseSettings):
    """Environment-backed settings for the notifier."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    slack_bot_token: SecretStr | None = Field(default=None, alias="SLACK_BOT_TOKEN")
    slack_channel_id: str | None = Field(default=None, alias="SLACK_CHANNEL_ID")
    github_event_path: str | None = Field(default=None, alias="GITHUB_EVENT_PATH")
    sc_ws_token: SecretStr | None = Field(default=None, alias="SC_WS_TOKEN")
    http_timeout: float = Field(
        default=DEFAULT_HTTP_TIMEOUT,
        alias="NOTIFIER_HTTP_TIMEOUT",
    )

    @property
    def secret_configured(self) -> bool:
        """Whether the optional SoundCloud WebSocket token is set."""
        return bool(self.sc_ws_token and self.sc_ws_token.get_secret_value())


def get_settings() -> Settings:
    """Load settings from environment variables."""
    try:
        return Settings.model_validate({})
    except ValidationError as exc:
        fields = ", ".join(str(error["loc"][0]) for error in exc.errors() if error["loc"])
        raise ConfigurationError(f"Invalid settings: {fields or exc}") from exc


def validate_settings(settings: Settings, *, dry_run: bool = False) -> None:
    """Raise ConfigurationError listing every missing required value."""
    missing: list[str] = []
    if not dry_run:
        if not settings.slack_bot_token or not settings.slack_bot_token.get_secret_value():
            missing.append("SLACK_BOT_TOKEN")
        if not settings.slack_channel_id:
            missing.append("SLACK_CHANNEL_ID")
    if not settings.github_event_path:
        missing.append("GITHUB_EVENT_PATH")
    if missing:
        raise ConfigurationError(f"Missing {', '.join(missing)}")


def log_elapsed(message: str, start: float, **fields: object) -> None:
    """Log elapsed time with additional fields."""
    elapsed = f"{time.perf_counter() - start:.2f}s"
    logger.info(
        "{message} (elapsed {elapsed})",
        message=message,
        elapsed=elapsed,
        **fields,
    )


class PullRequestContext(BaseModel):
    """Pull request fields used in the notification."""

    model_config = ConfigDict(frozen=True)

    title: str = ""
    body: str = ""
    url: str = ""
    author: str = UNKNOWN_AUTHOR
    source_branch: str = UNKNOWN_REF
    target_branch: str = UNKNOWN_REF


class LinkKind(StrEnum):
    """Media link kinds recognised in PR text."""

    SOUNDCLOUD = "soundcloud"
    NASA_MEDIA = "nasa_media"
    YOUTUBE = "youtube"


class DetectedLink(BaseModel):
    """First link of one kind found in PR text."""

    model_config = ConfigDict(frozen=True)

    kind: LinkKind
    raw_url: str
    extracted_id: str | None = None


class DetectedLinks(BaseModel):
    """At most one detected link per kind."""

    model_config = ConfigDict(frozen=True)

    soundcloud: DetectedLink | None = None
    nasa: DetectedLink | None = None
    youtube: DetectedLink | None = None

    @property
    def is_empty(self) -> bool:
        """Whether no link of any kind was found."""
        return self.soundcloud is None and self.nasa is None and self.youtube is None

    def kinds(self) -> list[str]:
        """Return the detected kinds for logging."""
        return [
            link.kind.value
            for link in (self.soundcloud, self.nasa, self.youtube)
            if link is not None
        ]


class UniversalLinkResult(BaseModel):
    """Outcome of resolving a SoundCloud URL through Odesli.

    A missing ``canonical_url`` is the unresolved variant, not an error.
    """

    model_config = ConfigDict(frozen=True)

    canonical_url: str | None = None
    platform_links: tuple[tuple[str, str], ...] = ()

    @classmethod
    def unresolved(cls) -> UniversalLinkResult:
        """Return the result used when resolution fails."""
        return cls()

    @property
    def resolved(self) -> bool:
        """Whether a universal link was obtained."""
        return bool(self.canonical_url)


class NasaMediaCard(BaseModel):
    """Metadata for one NASA image-archive asset."""

    model_config = ConfigDict(frozen=True)

    title: str
    description: str = ""
    date_created: str = ""
    center: str = ""
    nasa_id: str
    thumbnail_url: str | None = None
    canonical_url: str


class TextSection(BaseModel):
    """Block of mrkdwn text."""

    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str

    def to_block(self) -> JSONDict:
        """Render as a Slack section block."""
        return {"type": "section", "text": {"type": "mrkdwn", "text": self.text}}


class DividerSection(BaseModel):
    """Horizontal rule between sections."""

    model_config = ConfigDict(frozen=True)

    type: Literal["divider"] = "divider"

    def to_block(self) -> JSONDict:
        """Render as a Slack divider block."""
        return {"type": "divider"}


class ImageSection(BaseModel):
    """Block of mrkdwn text with a side image."""

    model_config = ConfigDict(frozen=True)

    type: Literal["image"] = "image"
    text: str
    image_url: str
    alt_text: str

    def to_block(self) -> JSONDict:
        """Render as a Slack section block with an image accessory."""
        return {
            "type": "section",
            "text": {"type": "mrkdwn", "text": self.text},
            "accessory": {
                "type": "image",
                "image_url": self.image_url,
                "alt_text": self.alt_text,
            },
        }


Section = TextSection | DividerSection | ImageSection


class NotificationDocument(BaseModel):
    """Composed Slack message: ordered sections plus fallback text."""

    model_config = ConfigDict(frozen=True)

    fallback_text: str
    sections: tuple[Section, ...]

    def to_blocks(self) -> list[JSONDict]:
        """Render all sections as Slack blocks."""
        return [section.to_block() for section in self.sections]

    def to_payload(self, channel_id: str) -> JSONDict:
        """Return the chat.postMessage request body."""
        return {
            "channel": channel_id,
            "text": self.fallback_text,
            "blocks": self.to_blocks(),
        }


def load_event(path: str | Path) -> JSONDict:
    """Read the GitHub event JSON file."""
    event_path = Path(path)
    try:
        raw = event_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigurationError(f"Cannot read event file {event_path}: {exc}") from exc
    try:
        event = json.loads(raw)
    except ValueError as exc:
        raise ConfigurationError(f"Event file {event_path} is not valid JSON") from exc
    if not isinstance(event, dict):
        raise ConfigurationError(f"Event file {event_path} is not a JSON object")
    return cast("JSONDict", event)


def parse_pull_request(event: JSONDict) -> PullRequestContext:
    """Build the PR context from an event payload, applying fallbacks."""
    pr = event.get("pull_request")
    pr_dict = cast("JSONDict", pr) if isinstance(pr, dict) else {}

    def nested(key: str, field: str) -> object:
        container = pr_dict.get(key)
        if isinstance(container, dict):
            return container.get(field)
        return None

    return PullRequestContext(
        title=optional_str(pr_dict.get("title")),
        body=optional_str(pr_dict.get("body")),
        url=optional_str(pr_dict.get("html_url")),
        author=optional_str(nested("user", "login"), UNKNOWN_AUTHOR),
        source_branch=optional_str(nested("head", "ref"), UNKNOWN_REF),
        target_branch=optional_str(nested("base", "ref"), UNKNOWN_REF),
    )


def build_haystack(pr: PullRequestContext) -> str:
    """Join title and body the way links are searched."""
    return f"{pr.title}\n\n{pr.body}"


def extract_nasa_id(url: str) -> str | None:
    """Return the media ID following ``/details/``, if any."""
    _, marker, rest = url.partition(NASA_DETAILS_MARKER)
    if not marker:
        return None
    media_id = rest.split("/", 1)[0]
    return media_id or None


def extract_youtube_id(url: str) -> str | None:
    """Return the video ID of a YouTube watch or short link."""
    match = YOUTUBE_ID_PATTERN.search(url)
    if match:
        return match.group(1)
    return None


def extract_links(text: str) -> DetectedLinks:
    """Find the first SoundCloud, NASA and YouTube link in text."""
    soundcloud = nasa = youtube = None
    if match := SOUNDCLOUD_PATTERN.search(text):
        soundcloud = DetectedLink(kind=LinkKind.SOUNDCLOUD, raw_url=match.group(1))
    if match := NASA_PATTERN.search(text):
        raw_url = match.group(1)
        nasa = DetectedLink(
            kind=LinkKind.NASA_MEDIA,
            raw_url=raw_url,
            extracted_id=extract_nasa_id(raw_url),
        )
    if match := YOUTUBE_PATTERN.search(text):
        raw_url = match.group(1)
        youtube = DetectedLink(
            kind=LinkKind.YOUTUBE,
            raw_url=raw_url,
            extracted_id=extract_youtube_id(raw_url),
        )
    return DetectedLinks(soundcloud=soundcloud, nasa=nasa, youtube=youtube)


def fetch_json(url: str, params: dict[str, str], timeout: float) -> JSONDict | None:
    """GET a JSON object, returning None on any HTTP or decoding failure."""
    try:
        response = requests.get(
            url,
            params=params,
            headers={"Accept": "application/json"},
            timeout=timeout,
        )
    except requests.RequestException as exc:
        logger.warning("Request failed: {url}", url=url, error=str(exc))
        return None
    if response.status_code >= HTTP_ERROR_THRESHOLD:
        logger.warning(
            "Request returned {status}: {url}",
            status=response.status_code,
            url=url,
        )
        return None
    try:
        payload = response.json()
    except ValueError:
        logger.warning("Response was not JSON: {url}", url=url)
        return None
    if not isinstance(payload, dict):
        logger.warning("Response was not a JSON object: {url}", url=url)
        return None
    return cast("JSONDict", payload)


def pick_platform_links(links_by_platform: object) -> tuple[tuple[str, str], ...]:
    """Select known platform links in preference order."""
    if not isinstance(links_by_platform, dict):
        return ()
    picked: list[tuple[str, str]] = []
    for name, key in PLATFORM_PREFERENCE:
        entry = links_by_platform.get(key)
        if not isinstance(entry, dict):
            continue
        url = optional_str(entry.get("url"))
        if url:
            picked.append((name, url))
    return tuple(picked)


def resolve_universal_link(
    soundcloud_url: str,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> UniversalLinkResult:
    """Resolve a SoundCloud URL to a song.link page and platform links."""
    data = fetch_json(ODESLI_LINKS_URL, {"url": soundcloud_url}, timeout)
    if data is None:
        return UniversalLinkResult.unresolved()
    return UniversalLinkResult(
        canonical_url=optional_str(data.get("pageUrl")) or None,
        platform_links=pick_platform_links(data.get("linksByPlatform")),
    )


def pick_thumbnail(links: JSONList) -> str | None:
    """Return the first preview or image link href."""
    for link in links:
        if not isinstance(link, dict):
            continue
        if link.get("rel") == "preview" or link.get("render") == "image":
            href = optional_str(link.get("href"))
            if href:
                return href
    return None


def lookup_nasa_media(
    media_id: str,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> NasaMediaCard | None:
    """Look up NASA image-archive metadata for a media ID."""
    data = fetch_json(NASA_SEARCH_URL, {"nasa_id": media_id}, timeout)
    if data is None:
        return None
    try:
        collection = ensure_dict(data.get("collection") or {}, "collection")
        items = ensure_list(collection.get("items") or [], "collection.items")
        if not items:
            logger.info("No NASA media found", nasa_id=media_id)
            return None
        item = ensure_dict(items[0], "collection.items[0]")
        data_entries = ensure_list(item.get("data") or [], "item.data")
        meta = ensure_dict(data_entries[0], "item.data[0]") if data_entries else {}
        links = ensure_list(item.get("links") or [], "item.links")
    except TypeError as exc:
        logger.warning("Unexpected NASA response shape", nasa_id=media_id, field=str(exc))
        return None
    return NasaMediaCard(
        title=optional_str(meta.get("title"), media_id),
        description=optional_str(meta.get("description")),
        date_created=optional_str(meta.get("date_created")),
        center=optional_str(meta.get("center")),
        nasa_id=optional_str(meta.get("nasa_id"), media_id),
        thumbnail_url=pick_thumbnail(links),
        canonical_url=f"{NASA_DETAILS_BASE_URL}{media_id}",
    )


def enrich_links(
    links: DetectedLinks,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> tuple[UniversalLinkResult | None, NasaMediaCard | None]:
    """Run the SoundCloud and NASA lookups that apply, in parallel."""
    universal_link: UniversalLinkResult | None = None
    nasa_card: NasaMediaCard | None = None
    nasa_id = links.nasa.extracted_id if links.nasa else None
    if links.nasa and not nasa_id:
        logger.info("NASA link has no media ID; skipping lookup", url=links.nasa.raw_url)
    with concurrent.futures.ThreadPoolExecutor(max_workers=2) as executor:
        sc_future = (
            executor.submit(resolve_universal_link, links.soundcloud.raw_url, timeout)
            if links.soundcloud
            else None
        )
        nasa_future = (
            executor.submit(lookup_nasa_media, nasa_id, timeout) if nasa_id else None
        )
        if sc_future is not None:
            universal_link = sc_future.result()
            logger.info("Songlink resolved: {resolved}", resolved=universal_link.resolved)
        if nasa_future is not None:
            nasa_card = nasa_future.result()
            logger.info("NASA media found: {found}", found=nasa_card is not None)
    return universal_link, nasa_card


def build_snippet(secret_configured: bool) -> str:
    """Return the masked WebSocket snippet or the skipped note."""
    if secret_configured:
        return "\n".join(SNIPPET_LINES)
    return SNIPPET_SKIPPED_NOTE


def header_text(pr: PullRequestContext) -> str:
    """Format the PR header lines."""
    return (
        f"*PR:* <{pr.url}|{escape_mrkdwn(pr.title)}>\n"
        f"*Author:* {escape_mrkdwn(pr.author)}\n"
        f"*Branch:* `{pr.source_branch}` → `{pr.target_branch}`"
    )


def soundcloud_sections(
    link: DetectedLink,
    universal_link: UniversalLinkResult | None,
) -> list[Section]:
    """Sections for a detected SoundCloud link."""
    result = universal_link or UniversalLinkResult.unresolved()
    if result.resolved:
        songlink = f"*Songlink:* <{result.canonical_url}|Open universal link>"
    else:
        songlink = SONGLINK_UNRESOLVED_NOTE
    sections: list[Section] = [
        DividerSection(),
        TextSection(text=f"*Detected SoundCloud URL:*\n{link.raw_url}\n{songlink}"),
    ]
    if result.resolved and result.platform_links:
        bullets = "\n".join(
            f"• *{name}:* <{url}|open>" for name, url in result.platform_links
        )
        sections.append(TextSection(text=bullets))
    return sections


def nasa_sections(card: NasaMediaCard) -> list[Section]:
    """Sections for a NASA media card; the image only when a thumbnail exists."""
    text = (
        "*NASA Media:*\n"
        f"*Title:* {escape_mrkdwn(card.title)}\n"
        f"*Date:* {escape_mrkdwn(card.date_created)}\n"
        f"*Center:* {escape_mrkdwn(card.center)}\n"
        f"<{card.canonical_url}|Open on images.nasa.gov>"
    )
    if card.thumbnail_url:
        section: Section = ImageSection(
            text=text,
            image_url=card.thumbnail_url,
            alt_text=NASA_THUMBNAIL_ALT_TEXT,
        )
    else:
        section = TextSection(text=text)
    return [DividerSection(), section]


def compose_notification(
    pr: PullRequestContext,
    links: DetectedLinks,
    universal_link: UniversalLinkResult | None,
    nasa_card: NasaMediaCard | None,
    secret_configured: bool,
) -> NotificationDocument:
    """Compose the Slack message for a PR and its media links."""
    sections: list[Section] = [TextSection(text=header_text(pr))]
    if links.soundcloud:
        sections.extend(soundcloud_sections(links.soundcloud, universal_link))
    if nasa_card:
        sections.extend(nasa_sections(nasa_card))
    if links.youtube:
        sections.append(DividerSection())
        sections.append(TextSection(text=f"*YouTube:* {links.youtube.raw_url}"))
    sections.append(DividerSection())
    sections.append(
        TextSection(text=f"{SNIPPET_HEADING}\n{build_snippet(secret_configured)}"),
    )
    return NotificationDocument(
        fallback_text=f"PR: {escape_mrkdwn(pr.title)}",
        sections=tuple(sections),
    )


def post_to_slack(
    document: NotificationDocument,
    channel_id: str,
    bot_token: str,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> None:
    """Post a message with chat.postMessage; one attempt, no retries."""
    try:
        response = requests.post(
            SLACK_POST_MESSAGE_URL,
            headers={
                "Content-Type": "application/json; charset=utf-8",
                "Authorization": f"Bearer {bot_token}",
            },
            json=document.to_payload(channel_id),
            timeout=timeout,
        )
    except requests.RequestException as exc:
        raise SlackDeliveryError(str(exc)) from exc
    try:
        payload = response.json()
    except ValueError as exc:
        raise SlackDeliveryError(f"non-JSON response ({response.status_code})") from exc
    if not isinstance(payload, dict) or payload.get("ok") is not True:
        error = payload.get("error") if isinstance(payload, dict) else None
        raise SlackDeliveryError(optional_str(error, "unknown_error"))


def run_notifier(args: argparse.Namespace, settings: Settings) -> None:
    """Execute the notifier workflow."""
    if args.event_path:
        settings = settings.model_copy(update={"github_event_path": args.event_path})
    validate_settings(settings, dry_run=args.dry_run)
    event_path = cast("str", settings.github_event_path)
    pr = parse_pull_request(load_event(event_path))
    logger.info("Pull request: {title}", title=pr.title, author=pr.author)
    links = extract_links(build_haystack(pr))
    logger.info("Detected links: {kinds}", kinds=links.kinds() or "none")

    start = time.perf_counter()
    universal_link, nasa_card = enrich_links(links, settings.http_timeout)
    log_elapsed("Enrichment finished", start)

    logger.info("SC WebSocket token configured", sc_token_configured=settings.secret_configured)
    document = compose_notification(
        pr,
        links,
        universal_link,
        nasa_card,
        settings.secret_configured,
    )
    if args.dry_run:
        logger.info("--- DRY RUN OUTPUT ---")
        logger.opt(raw=True).info(
            "{payload}\n",
            payload=json.dumps(
                document.to_payload(settings.slack_channel_id or ""),
                indent=2,
                ensure_ascii=False,
            ),
        )
        return
    start = time.perf_counter()
    post_to_slack(
        document,
        cast("str", settings.slack_channel_id),
        cast("SecretStr", settings.slack_bot_token).get_secret_value(),
        settings.http_timeout,
    )
    log_elapsed("Posted notification to Slack", start, channel=settings.slack_channel_id)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(description="PR media link notifier")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the Slack payload instead of posting it",
    )
    parser.add_argument(
        "--event-path",
        default=None,
        help="GitHub event JSON file (overrides GITHUB_EVENT_PATH)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run the notifier CLI."""
    logger.info("Starting PR media notifier")
    args = parse_args(argv)
    try:
        run_notifier(args, get_settings())
    except NotifierError as exc:
        logger.error("{error}", error=str(exc))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

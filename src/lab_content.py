"""Lab content service: Notion-backed content layer for the research lab site.

Pulls News, People, Publications and Research records out of Notion databases
and turns page bodies into a normalized, render-ready block tree.

Exposed two ways:
- as a library: get_news(), get_news_article(), get_person_bio(), ...
- as an MCP server (stdio or --http), with a cacheable /api/people/{id}/bio route

Configuration: NOTION_TOKEN (or --token-file) plus one database ID per
collection (NOTION_NEWS_DB, NOTION_PEOPLE_DB, NOTION_PUBLICATIONS_DB,
NOTION_RESEARCH_DB). Values are checked on first use.
"""

import asyncio
import json
import logging
import os
import random
import re
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional
from urllib.parse import urlencode

import httpx
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger("lab-content")


# =============================================================================
# Errors
# =============================================================================


class LabContentError(Exception):
    """Base class for errors raised by the content layer."""


class ConfigError(LabContentError):
    """A required configuration value is missing. Always fatal."""


class RateLimitedError(LabContentError):
    """Notion kept answering 429 after all retries were spent."""


# =============================================================================
# Configuration
# =============================================================================

# Collection name -> environment variable holding its database ID
DATABASE_ENV_VARS = {
    "news": "NOTION_NEWS_DB",
    "people": "NOTION_PEOPLE_DB",
    "publications": "NOTION_PUBLICATIONS_DB",
    "research": "NOTION_RESEARCH_DB",
}


@dataclass
class LabConfig:
    """Process-wide settings, built once at startup and handed to the client.

    Nothing is validated at construction time: a missing token or database ID
    only raises ConfigError when a code path actually needs it.
    """

    token: Optional[str] = None
    news_db: Optional[str] = None
    people_db: Optional[str] = None
    publications_db: Optional[str] = None
    research_db: Optional[str] = None

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        token_file: Optional[str] = None,
    ) -> "LabConfig":
        """Read settings from environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ).
            token_file: Optional path whose contents override NOTION_TOKEN.

        Returns:
            A LabConfig with empty values normalized to None.
        """
        env = os.environ if environ is None else environ

        token = env.get("NOTION_TOKEN") or None
        if token_file:
            token = Path(token_file).expanduser().read_text().strip() or None

        return cls(
            token=token,
            **{
                f"{name}_db": env.get(var) or None
                for name, var in DATABASE_ENV_VARS.items()
            },
        )

    def require_token(self) -> str:
        if not self.token:
            raise ConfigError("NOTION_TOKEN environment variable is not set")
        return self.token

    def database_id(self, collection: str) -> str:
        """Return the database ID for a collection, or raise ConfigError."""
        env_var = DATABASE_ENV_VARS.get(collection)
        if env_var is None:
            raise ConfigError(f"Unknown collection: {collection}")
        value = getattr(self, f"{collection}_db")
        if not value:
            raise ConfigError(f"{env_var} environment variable is not set")
        return value


# =============================================================================
# ID Validation
# =============================================================================

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$',
    re.IGNORECASE
)


def is_valid_notion_id(value: str) -> bool:
    """Check that a value looks like a Notion UUID (dashes optional).

    Gate for every by-ID fetch: anything else is rejected before a request
    is made.
    """
    if not isinstance(value, str):
        return False
    return UUID_PATTERN.fullmatch(value) is not None


# =============================================================================
# Notion API Client
# =============================================================================

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"

# Notion's documented page size ceiling
PAGE_SIZE = 100

MAX_CONCURRENT_REQUESTS = 50

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_JITTER_MAX = 0.5  # max random jitter to add (seconds)


def _compute_retry_delay(attempt: int, retry_after: float | None = None) -> float:
    """Compute exponential backoff delay with jitter for rate limiting.

    Args:
        attempt: Current retry attempt number (0-indexed).
        retry_after: Optional Retry-After header value from server.

    Returns:
        Delay in seconds, including random jitter.
    """
    base_delay = RETRY_BASE_DELAY * (2 ** attempt)
    if retry_after is not None:
        base_delay = max(retry_after, base_delay)
    return base_delay + random.uniform(0, RETRY_JITTER_MAX)


def _parse_retry_after(value: Optional[str]) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class NotionClient:
    """Async Notion API client with bounded concurrency and 429 retry.

    The underlying httpx.AsyncClient and the semaphore are created lazily
    inside the running event loop, on first request.
    """

    def __init__(
        self,
        config: LabConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        max_concurrency: int = MAX_CONCURRENT_REQUESTS,
    ):
        self.config = config
        self._http_client = http_client
        self._max_concurrency = max_concurrency
        self._semaphore: Optional[asyncio.Semaphore] = None

    def _get_semaphore(self) -> asyncio.Semaphore:
        """Get or create the rate-limiting semaphore."""
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_concurrency)
        return self._semaphore

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=30.0)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def request(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[dict] = None
    ) -> dict:
        """Make an authenticated request to the Notion API.

        Uses a semaphore to limit concurrent requests and exponential backoff
        for rate limit errors (429).

        Raises:
            ConfigError: No token configured.
            RateLimitedError: Still rate limited after MAX_RETRIES attempts.
            httpx.HTTPStatusError: Any other non-2xx response.
        """
        token = self.config.require_token()
        if method not in ("GET", "POST"):
            raise ValueError(f"Unsupported method: {method}")

        headers = {
            "Authorization": f"Bearer {token}",
            "Notion-Version": NOTION_VERSION,
            "Content-Type": "application/json",
        }
        url = f"{NOTION_API_BASE}{endpoint}"
        client = self._get_http_client()

        async with self._get_semaphore():
            for attempt in range(MAX_RETRIES):
                if method == "GET":
                    response = await client.get(url, headers=headers)
                else:
                    response = await client.post(url, headers=headers, json=json_body or {})

                if response.status_code == 429:
                    if attempt == MAX_RETRIES - 1:
                        break
                    retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                    delay = _compute_retry_delay(attempt, retry_after)
                    logger.warning(f"Rate limited on {endpoint}, waiting {delay:.1f}s (attempt {attempt + 1})")
                    await asyncio.sleep(delay)
                    continue

                response.raise_for_status()
                return response.json()

        raise RateLimitedError(f"Max retries ({MAX_RETRIES}) exceeded for {method} {endpoint}")

    async def query_database(
        self,
        database_id: str,
        filter_obj: Optional[dict] = None,
        sorts: Optional[list] = None,
    ) -> list[dict]:
        """Query every row of a database, following pagination to the end.

        Args:
            database_id: The database UUID.
            filter_obj: Optional Notion filter object.
            sorts: Optional list of Notion sort objects.

        Returns:
            Page objects in the order Notion returned them.
        """
        rows: list[dict] = []
        start_cursor = None

        while True:
            body: dict = {"page_size": PAGE_SIZE}
            if filter_obj:
                body["filter"] = filter_obj
            if sorts:
                body["sorts"] = sorts
            if start_cursor:
                body["start_cursor"] = start_cursor

            result = await self.request("POST", f"/databases/{database_id}/query", json_body=body)
            rows.extend(result.get("results", []))

            if not result.get("has_more") or not result.get("next_cursor"):
                break
            start_cursor = result["next_cursor"]

        return rows

    async def retrieve_page(self, page_id: str) -> dict:
        """Fetch page metadata (properties, created_time, ...)."""
        return await self.request("GET", f"/pages/{page_id}")

    async def list_block_children(self, block_id: str) -> list[dict]:
        """Fetch the immediate children of a block or page, all pages of them."""
        blocks: list[dict] = []
        start_cursor = None

        while True:
            params: dict = {"page_size": PAGE_SIZE}
            if start_cursor:
                params["start_cursor"] = start_cursor

            result = await self.request("GET", f"/blocks/{block_id}/children?{urlencode(params)}")
            blocks.extend(result.get("results", []))

            if not result.get("has_more") or not result.get("next_cursor"):
                break
            start_cursor = result["next_cursor"]

        return blocks


# =============================================================================
# Rich Text
# =============================================================================


@dataclass(frozen=True)
class RichTextSpan:
    """A run of uniformly formatted text."""
    text: str
    bold: bool = False
    italic: bool = False
    strikethrough: bool = False
    underline: bool = False
    code: bool = False
    link: Optional[str] = None
    color: Optional[str] = None

    def to_dict(self) -> dict:
        """Serialize, keeping only attributes that are actually set."""
        data: dict[str, Any] = {"text": self.text}
        for name in ("bold", "italic", "strikethrough", "underline", "code"):
            if getattr(self, name):
                data[name] = True
        if self.link:
            data["link"] = self.link
        if self.color:
            data["color"] = self.color
        return data


ANNOTATION_FLAGS = ("bold", "italic", "strikethrough", "underline", "code")


def parse_rich_text(rich_text: Optional[list[dict]]) -> list[RichTextSpan]:
    """Convert a Notion rich_text array to spans, preserving run order.

    Args:
        rich_text: Notion API rich_text array (None is treated as empty).

    Returns:
        One RichTextSpan per run.
    """
    if not rich_text:
        return []

    spans = []
    for item in rich_text:
        annotations = item.get("annotations") or {}
        flags = {name: True for name in ANNOTATION_FLAGS if annotations.get(name)}

        color = annotations.get("color")
        if color == "default":
            color = None

        spans.append(RichTextSpan(
            text=item.get("plain_text") or "",
            link=item.get("href") or None,
            color=color or None,
            **flags,
        ))
    return spans


def rich_text_to_plain(rich_text: Optional[list[dict]]) -> str:
    """Flatten a Notion rich_text array to plain text."""
    if not rich_text:
        return ""
    return "".join(t.get("plain_text") or "" for t in rich_text)


# =============================================================================
# Content Blocks
# =============================================================================


class BlockType(str, Enum):
    """Block kinds the site knows how to render. Everything else is dropped."""
    HEADING_1 = "heading_1"
    HEADING_2 = "heading_2"
    HEADING_3 = "heading_3"
    PARAGRAPH = "paragraph"
    BULLETED_LIST_ITEM = "bulleted_list_item"
    NUMBERED_LIST_ITEM = "numbered_list_item"
    QUOTE = "quote"
    CALLOUT = "callout"
    CODE = "code"
    IMAGE = "image"
    TABLE = "table"
    TABLE_ROW = "table_row"
    TOGGLE = "toggle"
    DIVIDER = "divider"


# Blocks kept even when they carry no text
STRUCTURAL_BLOCK_TYPES = {BlockType.DIVIDER, BlockType.TABLE, BlockType.TABLE_ROW}

# Key under which fetch_block_tree attaches fetched children to a raw block
CHILDREN_KEY = "_children"


@dataclass(frozen=True)
class ContentBlock:
    """A normalized, render-ready block.

    `content` is always a plain-text fallback. `children` is only set for
    tables (rows) and toggles (nested blocks).
    """
    id: str
    type: str
    content: str
    rich_text: Optional[list[RichTextSpan]] = None
    children: Optional[list["ContentBlock"]] = None
    language: Optional[str] = None
    url: Optional[str] = None
    caption: Optional[list[RichTextSpan]] = None
    icon: Optional[str] = None
    cells: Optional[list[list[RichTextSpan]]] = None
    table_width: Optional[int] = None
    has_column_header: Optional[bool] = None
    has_row_header: Optional[bool] = None

    def to_dict(self) -> dict:
        return to_json(self)


def _normalized_children(block: dict) -> Optional[list[ContentBlock]]:
    if CHILDREN_KEY not in block:
        return None
    return normalize_blocks(block[CHILDREN_KEY])


def _normalize_text_block(block: dict, data: dict) -> ContentBlock:
    rich_text = data.get("rich_text")
    return ContentBlock(
        id=block.get("id", ""),
        type=block["type"],
        content=rich_text_to_plain(rich_text),
        rich_text=parse_rich_text(rich_text),
    )


def _normalize_toggle(block: dict, data: dict) -> ContentBlock:
    rich_text = data.get("rich_text")
    return ContentBlock(
        id=block.get("id", ""),
        type=block["type"],
        content=rich_text_to_plain(rich_text),
        rich_text=parse_rich_text(rich_text),
        children=_normalized_children(block),
    )


def _normalize_callout(block: dict, data: dict) -> ContentBlock:
    rich_text = data.get("rich_text")
    icon = data.get("icon") or {}
    # External and uploaded icons are not rendered
    emoji = icon.get("emoji") if icon.get("type") == "emoji" else None
    return ContentBlock(
        id=block.get("id", ""),
        type=block["type"],
        content=rich_text_to_plain(rich_text),
        rich_text=parse_rich_text(rich_text),
        icon=emoji or None,
    )


def _normalize_code(block: dict, data: dict) -> ContentBlock:
    return ContentBlock(
        id=block.get("id", ""),
        type=block["type"],
        content=rich_text_to_plain(data.get("rich_text")),
        language=data.get("language") or "plaintext",
        caption=parse_rich_text(data.get("caption")),
    )


def _file_object_url(file_obj: Optional[dict]) -> str:
    """URL of a Notion file object, whether external or Notion-hosted."""
    if not file_obj:
        return ""
    file_type = file_obj.get("type")
    if file_type in ("external", "file"):
        return (file_obj.get(file_type) or {}).get("url") or ""
    # Untyped payloads: take whichever variant is present
    for variant in ("external", "file"):
        url = (file_obj.get(variant) or {}).get("url")
        if url:
            return url
    return ""


def _normalize_image(block: dict, data: dict) -> ContentBlock:
    url = _file_object_url(data)
    return ContentBlock(
        id=block.get("id", ""),
        type=block["type"],
        content=url,
        url=url,
        caption=parse_rich_text(data.get("caption")),
    )


def _normalize_table(block: dict, data: dict) -> ContentBlock:
    return ContentBlock(
        id=block.get("id", ""),
        type=block["type"],
        content="table",
        children=_normalized_children(block),
        table_width=data.get("table_width") or 0,
        has_column_header=bool(data.get("has_column_header")),
        has_row_header=bool(data.get("has_row_header")),
    )


def _normalize_table_row(block: dict, data: dict) -> ContentBlock:
    return ContentBlock(
        id=block.get("id", ""),
        type=block["type"],
        content="table_row",
        cells=[parse_rich_text(cell) for cell in data.get("cells") or []],
    )


def _normalize_divider(block: dict, data: dict) -> ContentBlock:
    return ContentBlock(id=block.get("id", ""), type=block["type"], content="---")


_BLOCK_NORMALIZERS: dict[BlockType, Callable[[dict, dict], ContentBlock]] = {
    BlockType.HEADING_1: _normalize_text_block,
    BlockType.HEADING_2: _normalize_text_block,
    BlockType.HEADING_3: _normalize_text_block,
    BlockType.PARAGRAPH: _normalize_text_block,
    BlockType.BULLETED_LIST_ITEM: _normalize_text_block,
    BlockType.NUMBERED_LIST_ITEM: _normalize_text_block,
    BlockType.QUOTE: _normalize_text_block,
    BlockType.CALLOUT: _normalize_callout,
    BlockType.CODE: _normalize_code,
    BlockType.IMAGE: _normalize_image,
    BlockType.TABLE: _normalize_table,
    BlockType.TABLE_ROW: _normalize_table_row,
    BlockType.TOGGLE: _normalize_toggle,
    BlockType.DIVIDER: _normalize_divider,
}


def normalize_block(block: dict) -> ContentBlock:
    """Convert one raw Notion block (children attached) to a ContentBlock.

    Unknown block types come back with empty content and no optional fields,
    which makes filter_empty_blocks drop them.
    """
    raw_type = block.get("type", "")
    try:
        kind = BlockType(raw_type)
    except ValueError:
        return ContentBlock(id=block.get("id", ""), type=raw_type, content="")

    data = block.get(raw_type) or {}
    return _BLOCK_NORMALIZERS[kind](block, data)


def _is_empty_block(block: ContentBlock) -> bool:
    if block.content or block.rich_text:
        return False
    return block.type not in STRUCTURAL_BLOCK_TYPES


def filter_empty_blocks(blocks: Iterable[ContentBlock]) -> list[ContentBlock]:
    """Drop blocks with no text that aren't dividers, tables or table rows."""
    return [b for b in blocks if not _is_empty_block(b)]


def normalize_blocks(blocks: Iterable[dict]) -> list[ContentBlock]:
    """Normalize a list of raw blocks and filter out the empty ones."""
    return filter_empty_blocks(normalize_block(b) for b in blocks)


# =============================================================================
# Block Tree Fetching
# =============================================================================

MAX_BLOCK_DEPTH = 5


async def fetch_block_tree(
    client: NotionClient,
    block_id: str,
    depth: int = 0,
    max_depth: int = MAX_BLOCK_DEPTH
) -> list[dict]:
    """Fetch all children of a block, recursively, siblings in parallel.

    Each block with `has_children` gets its subtree under CHILDREN_KEY. Input
    blocks are copied, not mutated. If one subtree fails, the sibling fetches
    still in flight are cancelled before the error propagates.

    Args:
        client: Notion client.
        block_id: The parent block/page ID.
        depth: Current recursion depth.
        max_depth: Depth at which fetching stops and [] is returned.

    Returns:
        Raw block objects in Notion order.
    """
    if depth >= max_depth:
        return []

    blocks = await client.list_block_children(block_id)

    positions = [i for i, b in enumerate(blocks) if b.get("has_children")]
    if not positions:
        return blocks

    tasks = [
        asyncio.ensure_future(fetch_block_tree(client, blocks[i]["id"], depth + 1, max_depth))
        for i in positions
    ]
    try:
        subtrees = await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        raise

    tree = list(blocks)
    for i, children in zip(positions, subtrees):
        tree[i] = {**blocks[i], CHILDREN_KEY: children}
    return tree


# =============================================================================
# Page Properties
# =============================================================================


def extract_property_value(prop: Optional[dict]) -> str:
    """Extract a displayable string from a Notion property.

    Args:
        prop: Property object from page.properties (None allowed).

    Returns:
        String representation of the value, "" when unset or unsupported.
    """
    if not prop:
        return ""
    prop_type = prop.get("type", "")

    if prop_type in ("title", "rich_text"):
        return rich_text_to_plain(prop.get(prop_type))

    elif prop_type in ("select", "status"):
        option = prop.get(prop_type)
        return (option.get("name") or "") if option else ""

    elif prop_type == "multi_select":
        options = prop.get("multi_select") or []
        return ", ".join(opt.get("name", "") for opt in options)

    elif prop_type in ("url", "email", "phone_number"):
        return prop.get(prop_type) or ""

    elif prop_type == "number":
        num = prop.get("number")
        return str(num) if num is not None else ""

    elif prop_type == "date":
        date_obj = prop.get("date")
        return (date_obj.get("start") or "") if date_obj else ""

    elif prop_type == "checkbox":
        return "1" if prop.get("checkbox") else "0"

    return ""


def _property(page: dict, name: str) -> dict:
    return (page.get("properties") or {}).get(name) or {}


def property_text(page: dict, *names: str) -> str:
    """First non-empty value among the named properties."""
    for name in names:
        value = extract_property_value(_property(page, name))
        if value:
            return value
    return ""


def property_number(page: dict, name: str) -> Optional[float]:
    num = _property(page, name).get("number")
    if isinstance(num, bool) or not isinstance(num, (int, float)):
        return None
    return num


def property_checkbox(page: dict, name: str) -> bool:
    return _property(page, name).get("checkbox") is True


def property_date(page: dict, name: str) -> str:
    date_obj = _property(page, name).get("date") or {}
    return date_obj.get("start") or ""


def property_names(page: dict, name: str) -> list[str]:
    """Option names of a multi_select property."""
    options = _property(page, name).get("multi_select") or []
    return [opt.get("name", "") for opt in options if opt.get("name")]


def property_file_url(page: dict, name: str) -> str:
    """URL of the first file in a files property."""
    files = _property(page, name).get("files") or []
    if not files:
        return ""
    return _file_object_url(files[0])


def relation_ids(page: dict, name: str) -> list[str]:
    relations = _property(page, name).get("relation") or []
    return [r["id"] for r in relations if r.get("id")]


# =============================================================================
# Relation Resolution
# =============================================================================


async def fetch_related_pages(
    client: NotionClient,
    page_ids: Iterable[str]
) -> dict[str, dict]:
    """Fetch each distinct page ID exactly once, all in parallel.

    Failed fetches are logged and left out of the result, so one missing
    author never sinks a whole listing.

    Returns:
        Mapping of page ID to page object, for the IDs that resolved.
    """
    unique_ids = list(dict.fromkeys(pid for pid in page_ids if pid))
    if not unique_ids:
        return {}

    async def fetch_one(page_id: str) -> Optional[dict]:
        try:
            return await client.retrieve_page(page_id)
        except ConfigError:
            raise
        except Exception as e:
            logger.warning(f"Failed to resolve related page {page_id}: {e!r}")
            return None

    pages = await asyncio.gather(*[fetch_one(pid) for pid in unique_ids])
    return {pid: page for pid, page in zip(unique_ids, pages) if page is not None}


async def resolve_relations(
    client: NotionClient,
    pages: Iterable[dict],
    property_name: str,
    first_only: bool = False
) -> dict[str, dict]:
    """Resolve a relation property across many pages with one batch of fetches.

    Args:
        client: Notion client.
        pages: Source pages carrying the relation.
        property_name: Name of the relation property (e.g. "Author").
        first_only: Only follow the first reference of each page.

    Returns:
        Mapping of related page ID to related page object.
    """
    ids: list[str] = []
    for page in pages:
        refs = relation_ids(page, property_name)
        ids.extend(refs[:1] if first_only else refs)
    return await fetch_related_pages(client, ids)


@dataclass(frozen=True)
class Author:
    id: str
    name: str


def first_related_author(
    page: dict,
    property_name: str,
    resolved: Mapping[str, dict]
) -> Optional[Author]:
    refs = relation_ids(page, property_name)
    if not refs or refs[0] not in resolved:
        return None
    related = resolved[refs[0]]
    return Author(id=related.get("id") or refs[0], name=property_text(related, "Name"))


def joined_related_names(
    page: dict,
    property_name: str,
    resolved: Mapping[str, dict]
) -> str:
    """Names of every resolved reference, in relation order, comma-separated."""
    names = [
        property_text(resolved[ref], "Name")
        for ref in relation_ids(page, property_name)
        if ref in resolved
    ]
    return ", ".join(name for name in names if name)


# =============================================================================
# Content Records
# =============================================================================


@dataclass
class NewsItem:
    id: str
    title: str
    date: str
    description: str
    author: Optional[Author] = None


@dataclass
class NewsArticle(NewsItem):
    content: list[ContentBlock] = field(default_factory=list)


@dataclass
class Person:
    id: str
    name: str
    role: str
    bio: str
    email: Optional[str] = None
    website: Optional[str] = None
    linkedin: Optional[str] = None
    twitter: Optional[str] = None
    google_scholar: Optional[str] = None
    photo: Optional[str] = None
    year: Optional[str] = None
    current_position: Optional[str] = None
    order: float = 0


@dataclass
class Publication:
    id: str
    title: str
    authors: str
    venue: str
    year: int
    paper_url: Optional[str] = None
    code_url: Optional[str] = None


@dataclass
class ResearchProject:
    id: str
    title: str
    description: str
    status: str
    article_type: str
    tags: list[str]
    team: str
    order: float
    featured_on_home: bool
    date: str
    authors: str
    preview_image: str


@dataclass
class ResearchArticle(ResearchProject):
    content: list[ContentBlock] = field(default_factory=list)


def _camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def to_json(value: Any) -> Any:
    """Convert records and blocks to JSON-ready data with camelCase keys.

    Unset (None) fields are omitted.
    """
    if isinstance(value, RichTextSpan):
        return value.to_dict()
    if is_dataclass(value) and not isinstance(value, type):
        data = {}
        for f in fields(value):
            item = getattr(value, f.name)
            if item is not None:
                data[_camel_case(f.name)] = to_json(item)
        return data
    if isinstance(value, (list, tuple)):
        return [to_json(item) for item in value]
    return value


# =============================================================================
# Record Mapping
# =============================================================================


def _news_item_fields(page: dict, resolved_authors: Mapping[str, dict]) -> dict:
    return {
        "id": page.get("id", ""),
        "title": property_text(page, "Title"),
        "date": property_date(page, "Date"),
        "description": property_text(page, "Description"),
        "author": first_related_author(page, "Author", resolved_authors),
    }


def page_to_person(page: dict) -> Person:
    order = property_number(page, "Order")
    return Person(
        id=page.get("id", ""),
        name=property_text(page, "Name"),
        role=property_text(page, "Role"),
        bio=property_text(page, "Bio"),
        email=property_text(page, "Email") or None,
        website=property_text(page, "Website", "Website URL") or None,
        linkedin=property_text(page, "LinkedIn", "LinkedIn URL") or None,
        twitter=property_text(page, "X", "X URL") or None,
        google_scholar=property_text(page, "Google Scholar", "Google Scholar URL") or None,
        photo=property_file_url(page, "Headshot") or property_file_url(page, "Photo") or None,
        year=property_text(page, "Year") or None,
        current_position=property_text(page, "Current Position") or None,
        order=order if order is not None else 0,
    )


def page_to_publication(page: dict) -> Publication:
    year = property_number(page, "Year")
    return Publication(
        id=page.get("id", ""),
        title=property_text(page, "Title"),
        authors=property_text(page, "Authors"),
        venue=property_text(page, "Venue"),
        year=int(year) if year else datetime.now().year,
        paper_url=property_text(page, "Paper URL") or None,
        code_url=property_text(page, "Code URL") or None,
    )


def _research_project_fields(page: dict, resolved_authors: Mapping[str, dict]) -> dict:
    order = property_number(page, "Order (if featured)")
    return {
        "id": page.get("id", ""),
        "title": property_text(page, "Title"),
        "description": property_text(page, "Description"),
        "status": property_text(page, "Status") or "Active",
        "article_type": property_text(page, "Article Type"),
        "tags": property_names(page, "Tags"),
        "team": property_text(page, "Team"),
        "order": order if order is not None else 0,
        "featured_on_home": property_checkbox(page, "Featured on Home?"),
        "date": property_date(page, "Publish Date") or page.get("created_time") or "",
        "authors": joined_related_names(page, "Author(s)", resolved_authors),
        "preview_image": property_file_url(page, "Preview Image"),
    }


def _parse_timestamp(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _research_sort_key(project: ResearchProject) -> tuple:
    if project.featured_on_home:
        return (0, project.order, 0.0)
    published = _parse_timestamp(project.date)
    if published is None:
        return (2, 0, 0.0)
    return (1, 0, -published.timestamp())


def sort_research_projects(projects: Iterable[ResearchProject]) -> list[ResearchProject]:
    """Featured projects first by order, then the rest newest first."""
    return sorted(projects, key=_research_sort_key)


# =============================================================================
# Collection Fetchers
# =============================================================================

PUBLISHED_FILTER = {"property": "Published", "checkbox": {"equals": True}}


async def get_news(client: NotionClient) -> list[NewsItem]:
    """Published news, newest first, with authors resolved."""
    pages = await client.query_database(
        client.config.database_id("news"),
        filter_obj=PUBLISHED_FILTER,
        sorts=[{"property": "Date", "direction": "descending"}],
    )
    authors = await resolve_relations(client, pages, "Author", first_only=True)
    return [NewsItem(**_news_item_fields(page, authors)) for page in pages]


async def get_people(client: NotionClient) -> list[Person]:
    """Published people in their explicit display order."""
    pages = await client.query_database(
        client.config.database_id("people"),
        filter_obj=PUBLISHED_FILTER,
        sorts=[{"property": "Order", "direction": "ascending"}],
    )
    return [page_to_person(page) for page in pages]


async def get_publications(client: NotionClient) -> list[Publication]:
    """Published papers, most recent year first."""
    pages = await client.query_database(
        client.config.database_id("publications"),
        filter_obj=PUBLISHED_FILTER,
        sorts=[{"property": "Year", "direction": "descending"}],
    )
    return [page_to_publication(page) for page in pages]


async def get_research_projects(client: NotionClient) -> list[ResearchProject]:
    """Published research projects, featured ones first."""
    pages = await client.query_database(
        client.config.database_id("research"),
        filter_obj=PUBLISHED_FILTER,
    )
    authors = await resolve_relations(client, pages, "Author(s)")
    return sort_research_projects(
        ResearchProject(**_research_project_fields(page, authors)) for page in pages
    )


ALUMNI_ROLE = "Alumni"


def split_people(people: Iterable[Person]) -> tuple[list[Person], list[Person]]:
    """Split people into (team, alumni), each keeping the input order."""
    team: list[Person] = []
    alumni: list[Person] = []
    for person in people:
        (alumni if person.role == ALUMNI_ROLE else team).append(person)
    return team, alumni


def name_to_slug(name: str) -> str:
    """URL slug for a person's name: "Jane Q. Doe" -> "jane-q-doe"."""
    slug = re.sub(r'[^a-z0-9\s-]', '', name.lower())
    slug = re.sub(r'\s+', '-', slug)
    slug = re.sub(r'-+', '-', slug)
    return slug.strip()


def find_person_by_slug(people: Iterable[Person], slug: str) -> Optional[Person]:
    for person in people:
        if name_to_slug(person.name) == slug:
            return person
    return None


# =============================================================================
# Article Fetchers
# =============================================================================


class FetchStatus(Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True)
class FetchResult:
    """Outcome of a by-ID fetch.

    NOT_FOUND covers malformed IDs, missing and unpublished records. ERROR
    means the fetch itself failed. Callers typically render both the same way.
    """
    status: FetchStatus
    value: Any = None

    @property
    def found(self) -> bool:
        return self.status is FetchStatus.FOUND


NOT_FOUND = FetchResult(FetchStatus.NOT_FOUND)


def _is_not_found_error(e: Exception) -> bool:
    return (
        isinstance(e, httpx.HTTPStatusError)
        and e.response is not None
        and e.response.status_code == 404
    )


async def _fetch_published_article(
    client: NotionClient,
    article_id: str,
    kind: str,
    build: Callable[[dict, dict, list[ContentBlock]], Any],
    relation: str,
    first_only: bool,
) -> FetchResult:
    """Shared flow: validate, fetch, gate on Published, resolve, fetch body."""
    if not is_valid_notion_id(article_id):
        logger.info(f"Rejected malformed {kind} id {article_id!r}")
        return NOT_FOUND

    try:
        page = await client.retrieve_page(article_id)
        if not property_checkbox(page, "Published"):
            logger.info(f"{kind} {article_id} is not published")
            return NOT_FOUND

        authors = await resolve_relations(client, [page], relation, first_only=first_only)
        blocks = await fetch_block_tree(client, article_id)
    except ConfigError:
        raise
    except Exception as e:
        if _is_not_found_error(e):
            logger.info(f"{kind} {article_id} not found")
            return NOT_FOUND
        logger.exception(f"Failed to fetch {kind} {article_id}")
        return FetchResult(FetchStatus.ERROR)

    return FetchResult(FetchStatus.FOUND, build(page, authors, normalize_blocks(blocks)))


async def get_news_article(client: NotionClient, article_id: str) -> FetchResult:
    """Fetch one published news article with its body.

    Returns:
        FetchResult whose value is a NewsArticle when found.
    """
    def build(page: dict, authors: dict, content: list[ContentBlock]) -> NewsArticle:
        return NewsArticle(**_news_item_fields(page, authors), content=content)

    return await _fetch_published_article(
        client, article_id, "news article", build, "Author", first_only=True
    )


async def get_research_article(client: NotionClient, article_id: str) -> FetchResult:
    """Fetch one published research article with its body.

    Returns:
        FetchResult whose value is a ResearchArticle when found.
    """
    def build(page: dict, authors: dict, content: list[ContentBlock]) -> ResearchArticle:
        return ResearchArticle(**_research_project_fields(page, authors), content=content)

    return await _fetch_published_article(
        client, article_id, "research article", build, "Author(s)", first_only=False
    )


async def get_person_bio(client: NotionClient, person_id: str) -> list[ContentBlock]:
    """Body blocks of a person's page; [] when invalid or unavailable.

    No publication check: people reach the site through get_people().
    """
    if not is_valid_notion_id(person_id):
        return []

    try:
        blocks = await fetch_block_tree(client, person_id)
    except ConfigError:
        raise
    except Exception:
        logger.exception(f"Failed to fetch bio for {person_id}")
        return []

    return normalize_blocks(blocks)


# =============================================================================
# Self-Healing Error Messages
# =============================================================================


def _error(code: str, message: str, hint: str | None = None, ref: str | None = None) -> str:
    """Format error with optional self-healing hint.

    Args:
        code: Error code (e.g., NOT_FOUND, FETCH_FAILED)
        message: Human-readable description
        hint: Suggestion on how to fix the issue
        ref: The reference that failed (for context)

    Returns:
        Formatted error string with hint if provided.
    """
    parts = [f"error: {code} - {message}"]
    if ref:
        parts.append(f"ref: {ref}")
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


HINTS = {
    "not_found": "The page may be unpublished, deleted, or not shared with the integration. Pick an id from the matching listing tool.",
    "fetch_failed": "Notion could not be reached or rate limited the request. Try again shortly.",
}


# =============================================================================
# MCP Tools
# =============================================================================

mcp = FastMCP("lab-content", host="127.0.0.1", port=2053)

# Set once by main()
_client: Optional[NotionClient] = None


def _get_client() -> NotionClient:
    if _client is None:
        raise RuntimeError("Content client not initialized. Start the server via main().")
    return _client


async def _collection_or_empty(name: str, fetch: Callable) -> list:
    """Run a collection fetch; on failure log it and render an empty list."""
    try:
        return await fetch(_get_client())
    except ConfigError:
        raise
    except Exception:
        logger.exception(f"Failed to load {name}")
        return []


def _article_response(result: FetchResult, ref: str) -> str:
    if result.found:
        return json.dumps(to_json(result.value))
    if result.status is FetchStatus.ERROR:
        return _error("FETCH_FAILED", "Could not load article", hint=HINTS["fetch_failed"], ref=ref)
    return _error("NOT_FOUND", "No published article with this id", hint=HINTS["not_found"], ref=ref)


@mcp.tool()
async def lab_news() -> str:
    """List published news items, newest first, as JSON."""
    news = await _collection_or_empty("news", get_news)
    return json.dumps(to_json(news))


@mcp.tool()
async def lab_news_article(article_id: str) -> str:
    """Read one news article with its normalized content blocks.

    Args:
        article_id: Notion page UUID (dashes optional), as listed by lab_news.
    """
    result = await get_news_article(_get_client(), article_id)
    return _article_response(result, article_id)


@mcp.tool()
async def lab_people() -> str:
    """List people as JSON, split into {"team": [...], "alumni": [...]}."""
    people = await _collection_or_empty("people", get_people)
    team, alumni = split_people(people)
    return json.dumps({"team": to_json(team), "alumni": to_json(alumni)})


@mcp.tool()
async def lab_person_bio(person_id: str) -> str:
    """Read the bio blocks of one person as JSON ([] when unavailable)."""
    blocks = await get_person_bio(_get_client(), person_id)
    return json.dumps(to_json(blocks))


@mcp.tool()
async def lab_publications() -> str:
    """List published papers, newest year first, as JSON."""
    publications = await _collection_or_empty("publications", get_publications)
    return json.dumps(to_json(publications))


@mcp.tool()
async def lab_research() -> str:
    """List research projects as JSON, featured first."""
    projects = await _collection_or_empty("research", get_research_projects)
    return json.dumps(to_json(projects))


@mcp.tool()
async def lab_research_article(article_id: str) -> str:
    """Read one research article with its normalized content blocks.

    Args:
        article_id: Notion page UUID (dashes optional), as listed by lab_research.
    """
    result = await get_research_article(_get_client(), article_id)
    return _article_response(result, article_id)


# =============================================================================
# HTTP Endpoints (/health, /api/people/{id}/bio)
# =============================================================================

BIO_CACHE_CONTROL = "public, s-maxage=300, stale-while-revalidate=3600"


async def health_endpoint(request: Request) -> JSONResponse:
    """Health check: which settings are present, and whether the token works."""
    client = _get_client()
    config = client.config
    token_loaded = config.token is not None

    auth_status = None
    if token_loaded:
        try:
            result = await client.request("GET", "/users/me")
            bot_info = result.get("bot", {})
            auth_status = bot_info.get("workspace_name", "connected")
        except Exception as e:
            auth_status = f"error: {type(e).__name__}"

    return JSONResponse({
        "status": "ok",
        "token_loaded": token_loaded,
        "workspace": auth_status,
        "collections": {
            name: bool(getattr(config, f"{name}_db")) for name in DATABASE_ENV_VARS
        },
    })


async def person_bio_endpoint(request: Request) -> JSONResponse:
    """Bio blocks for one person, cacheable at the edge."""
    person_id = request.path_params.get("id", "")
    if not is_valid_notion_id(person_id):
        return JSONResponse({"error": "Invalid ID"}, status_code=400)

    try:
        blocks = await get_person_bio(_get_client(), person_id)
    except ConfigError:
        raise
    except Exception:
        logger.exception(f"Bio endpoint failed for {person_id}")
        return JSONResponse({"error": "Internal error"}, status_code=500)

    return JSONResponse(
        {"content": to_json(blocks)},
        headers={"Cache-Control": BIO_CACHE_CONTROL},
    )


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    """Run the lab content MCP server.

    Supports two transport modes:
    - stdio (default)
    - http: standalone server on port 2053, with /health and the bio route

    Usage:
        uv run lab-content                         # stdio, token from NOTION_TOKEN
        uv run lab-content --token-file ~/.notion  # token from file
        uv run lab-content --http                  # HTTP mode on localhost:2053
    """
    import argparse

    parser = argparse.ArgumentParser(description="Lab Content Server")
    parser.add_argument(
        "--token-file",
        help="Path to file containing Notion API token (default: $NOTION_TOKEN)"
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help="Run as HTTP server on localhost:2053 instead of stdio"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    if args.token_file:
        token_path = Path(args.token_file).expanduser()
        if not token_path.exists():
            logger.error(f"Token file not found: {token_path}")
            raise SystemExit(1)

    config = LabConfig.from_env(token_file=args.token_file)
    if args.token_file and not config.token:
        logger.error("Token file is empty")
        raise SystemExit(1)
    if not config.token:
        logger.warning("No Notion token configured; every fetch will fail until NOTION_TOKEN is set")

    global _client
    _client = NotionClient(config)

    if args.http:
        import uvicorn

        app = mcp.streamable_http_app()
        app.add_route("/health", health_endpoint, methods=["GET"])
        app.add_route("/api/people/{id}/bio", person_bio_endpoint, methods=["GET"])

        logger.info("Starting lab content server on http://127.0.0.1:2053")
        uvicorn.run(app, host="127.0.0.1", port=2053, log_level="warning")
    else:
        mcp.run()


if __name__ == "__main__":
    main()

"""Notion MCP server that reads and writes Markdown.

Provides Markdown-first access to Notion pages and blocks:
- notion_append_markdown: Append Markdown (or raw blocks) to a page/block
- notion_rewrite_page: Replace a page's content (append-first, never empty)
- notion_create_page: Create a page from Markdown
- notion_retrieve_block_children: Read children as JSON or Markdown
- notion_search: Search pages, optionally with their Markdown content

Token: Passed via --token-file <path> CLI argument (or NOTION_TOKEN).
"""

import asyncio
import json
import logging
import os
import random
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Optional, Sequence, Union
from urllib.parse import urlencode, urlparse

import httpx
from markdown_it import MarkdownIt
from markdown_it.tree import SyntaxTreeNode
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger("notion-markdown-mcp")

SERVER_NAME = "notion-markdown-mcp"
SERVER_VERSION = "1.0.1"

# =============================================================================
# Async Rate Limiting
# =============================================================================

# Notion allows roughly 3 requests/sec per integration
_notion_semaphore: Optional[asyncio.Semaphore] = None
_async_client: Optional[httpx.AsyncClient] = None

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_JITTER_MAX = 0.5  # seconds


def _compute_retry_delay(attempt: int, retry_after: float | None = None) -> float:
    """Exponential backoff with jitter, never shorter than Retry-After.

    Args:
        attempt: Current retry attempt number (0-indexed).
        retry_after: Optional Retry-After header value from server.

    Returns:
        Delay in seconds.
    """
    base_delay = RETRY_BASE_DELAY * (2 ** attempt)
    if retry_after is not None:
        base_delay = max(retry_after, base_delay)
    return base_delay + random.uniform(0, RETRY_JITTER_MAX)


def _http_error_detail(e: httpx.HTTPStatusError, max_len: int = 300) -> str:
    """Return the (truncated) response body of a failed request."""
    if e.response is not None:
        return e.response.text[:max_len]
    return str(e)


def _describe_error(e: Exception) -> str:
    """One-line description of a remote-call failure for result summaries."""
    if isinstance(e, httpx.HTTPStatusError) and e.response is not None:
        return f"HTTP {e.response.status_code}: {_http_error_detail(e, 200)}"
    return f"{type(e).__name__}: {e}"


def _get_semaphore() -> asyncio.Semaphore:
    """Get or create the rate-limiting semaphore."""
    global _notion_semaphore
    if _notion_semaphore is None:
        _notion_semaphore = asyncio.Semaphore(3)
    return _notion_semaphore


async def _get_async_client() -> httpx.AsyncClient:
    """Get or create the shared async HTTP client."""
    global _async_client
    if _async_client is None or _async_client.is_closed:
        _async_client = httpx.AsyncClient(timeout=30.0)
    return _async_client


# =============================================================================
# Credential Management
# =============================================================================

_notion_token: Optional[str] = None


class MissingTokenError(RuntimeError):
    """Raised when a Notion request is attempted before a token is loaded."""


def _get_token() -> str:
    """Get the Notion token (set via --token-file or NOTION_TOKEN)."""
    if _notion_token is None:
        raise MissingTokenError(
            "No Notion token. Pass --token-file <path> or set NOTION_TOKEN."
        )
    return _notion_token


def _load_token(token_file: Optional[str]) -> str:
    """Read the integration token from a file, falling back to NOTION_TOKEN.

    Raises:
        SystemExit: If no usable token is found.
    """
    if token_file:
        token_path = Path(token_file).expanduser()
        if not token_path.exists():
            logger.error(f"Token file not found: {token_path}")
            raise SystemExit(1)
        token = token_path.read_text().strip()
        source = str(token_path)
    else:
        token = os.environ.get("NOTION_TOKEN", "").strip()
        source = "NOTION_TOKEN"

    if not token:
        logger.error(f"No Notion token found in {source}")
        raise SystemExit(1)
    logger.info(f"Notion token loaded from {source}")
    return token


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_HTTP_PORT = 3000
DEFAULT_MARKDOWN_MAX_CHARS = 12000


def _env_int(name: str, default: int) -> int:
    """Read a positive integer from the environment, warning on bad values."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using {default}")
        return default
    if value <= 0:
        logger.warning(f"Invalid {name}={raw!r}, using {default}")
        return default
    return value


def get_transport_mode() -> str:
    """Transport from MCP_TRANSPORT_MODE: "stdio" (default) or "http"."""
    mode = os.environ.get("MCP_TRANSPORT_MODE", "stdio")
    if mode not in ("stdio", "http"):
        logger.warning(f'Unknown transport mode "{mode}", falling back to stdio')
        return "stdio"
    return mode


def get_markdown_default_for_read() -> bool:
    """Whether read tools return Markdown unless told otherwise."""
    return os.environ.get("NOTION_MCP_MARKDOWN_DEFAULT_FOR_READ") == "true"


def get_markdown_max_chars() -> int:
    """Maximum characters for Markdown input and output."""
    return _env_int("NOTION_MCP_MARKDOWN_MAX_CHARS", DEFAULT_MARKDOWN_MAX_CHARS)


def get_root_page_id() -> Optional[str]:
    """Default parent page for notion_create_page (NOTION_PAGE_ID)."""
    return os.environ.get("NOTION_PAGE_ID") or None


# =============================================================================
# ID Handling
# =============================================================================

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$',
    re.IGNORECASE
)
NOTION_URL_PATTERN = re.compile(
    r'https?://(?:www\.)?notion\.(?:so|site)/(?:[^/]+/)?([^?#]+)',
    re.IGNORECASE
)


def normalize_uuid(uuid_str: str) -> str:
    """Normalize a UUID to the dashed lowercase form.

    Raises:
        ValueError: If input is not a valid UUID (wrong length or invalid chars).
    """
    clean = uuid_str.replace('-', '').lower()
    if len(clean) != 32:
        raise ValueError(f"Invalid UUID length: {uuid_str}")
    if not all(c in '0123456789abcdef' for c in clean):
        raise ValueError(f"Invalid UUID characters: {uuid_str}")
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


def extract_uuid_from_url(url: str) -> Optional[str]:
    """Extract a Notion UUID from a notion.so / notion.site URL.

    The UUID is the trailing 32 hex characters of the path, optionally
    after a title slug (``Page-Title-<uuid>``).
    """
    match = NOTION_URL_PATTERN.match(url)
    if not match:
        return None

    path_part = match.group(1)
    uuid_match = re.search(r'([0-9a-f]{32}|[0-9a-f-]{36})$', path_part, re.IGNORECASE)
    if uuid_match:
        try:
            return normalize_uuid(uuid_match.group(1))
        except ValueError:
            return None
    return None


def resolve_notion_id(ref: str) -> Optional[str]:
    """Resolve a UUID (with or without dashes) or Notion URL to a UUID."""
    ref = (ref or "").strip()
    if UUID_PATTERN.match(ref):
        return normalize_uuid(ref)
    if ref.startswith("http"):
        return extract_uuid_from_url(ref)
    return None


# =============================================================================
# Text Normalizer
# =============================================================================

# Notion API limit for a single rich_text item
MAX_RICH_TEXT_LENGTH = 2000

# How far back from the limit to look for a friendly break point
CHUNK_BREAK_WINDOW = 100
CHUNK_BREAK_CHARS = re.compile(r'[\s.,;:!?]')

# Applied in order. Images must run before links so the image's bracket
# syntax is not consumed as a link.
INLINE_MARKDOWN_PATTERNS = [
    (re.compile(r'!\[([^\]]*)\]\([^)]+\)'), r'\1'),
    (re.compile(r'\[([^\]]+)\]\([^)]+\)'), r'\1'),
    (re.compile(r'(?<!\\)\*\*\*(.+?)(?<!\\)\*\*\*'), r'\1'),
    (re.compile(r'(?<![\w\\])___(.+?)(?<!\\)___(?!\w)'), r'\1'),
    (re.compile(r'(?<!\\)\*\*(.+?)(?<!\\)\*\*'), r'\1'),
    (re.compile(r'(?<![\w\\])__(.+?)(?<!\\)__(?!\w)'), r'\1'),
    (re.compile(r'(?<!\\)\*(.+?)(?<!\\)\*'), r'\1'),
    (re.compile(r'(?<![\w\\])_(.+?)(?<!\\)_(?!\w)'), r'\1'),
    (re.compile(r'~~(.+?)~~'), r'\1'),
    (re.compile(r'`([^`]+)`'), r'\1'),
]

# Backslash escapes of ASCII punctuation (CommonMark)
ESCAPED_PUNCTUATION_PATTERN = re.compile(r'\\([!-/:-@\[-`{-~])')

# Backslash at end of line (CommonMark hard line break)
BACKSLASH_HARD_BREAK_PATTERN = re.compile(r'(?<!\\)\\\n')


def strip_inline_markdown(text: Optional[str]) -> str:
    """Strip inline Markdown syntax, keeping the visible text.

    Removes images (keeps alt text), links (keeps link text), bold/italic
    combinations, bold, italic, strikethrough and inline code, then
    un-escapes backslash-escaped punctuation. Backslash hard line
    breaks become plain newlines.

    Args:
        text: Text with potential Markdown formatting.

    Returns:
        Plain text. ``None`` yields an empty string.
    """
    if not text:
        return ""

    result = BACKSLASH_HARD_BREAK_PATTERN.sub("\n", text)
    for pattern, replacement in INLINE_MARKDOWN_PATTERNS:
        result = pattern.sub(replacement, result)
    return ESCAPED_PUNCTUATION_PATTERN.sub(r'\1', result)


@dataclass(frozen=True)
class TextRun:
    """A plain-text rich_text item, at most MAX_RICH_TEXT_LENGTH characters."""
    content: str
    link: Optional[str] = None

    def to_notion(self) -> dict:
        text: dict = {"content": self.content}
        if self.link:
            text["link"] = {"url": self.link}
        return {"type": "text", "text": text}


def chunk_text(text: str, max_length: int = MAX_RICH_TEXT_LENGTH) -> list[TextRun]:
    """Split text into runs that fit Notion's rich_text length limit.

    Prefers to break after whitespace or punctuation found within the last
    CHUNK_BREAK_WINDOW characters of each window; otherwise breaks exactly
    at ``max_length``. Joining the run contents yields ``text`` unchanged.

    Args:
        text: Text to split.
        max_length: Maximum length per run.

    Returns:
        List of TextRun, in order.
    """
    if max_length < 1:
        raise ValueError(f"max_length must be positive, got {max_length}")

    if len(text) <= max_length:
        return [TextRun(text)]

    runs: list[TextRun] = []
    remaining = text

    while remaining:
        if len(remaining) <= max_length:
            runs.append(TextRun(remaining))
            break

        split_index = max_length
        search_start = max(0, max_length - CHUNK_BREAK_WINDOW)
        for i in range(max_length - 1, search_start - 1, -1):
            if CHUNK_BREAK_CHARS.match(remaining[i]):
                split_index = i + 1
                break

        runs.append(TextRun(remaining[:split_index]))
        remaining = remaining[split_index:]

    return runs


def to_text_runs(text: Optional[str]) -> list[TextRun]:
    """Normalize Markdown text into plain TextRuns.

    An empty result still yields one empty run: Notion requires at least
    one rich_text item on every text block.
    """
    if text is None:
        return []

    plain_text = strip_inline_markdown(text)
    if not plain_text:
        return [TextRun("")]
    return chunk_text(plain_text)


# =============================================================================
# Block Model
# =============================================================================

def _rich_text(runs: Sequence[TextRun]) -> list[dict]:
    return [run.to_notion() for run in runs]


class Block:
    """Base class for blocks built from Markdown.

    Subclasses set ``block_type`` to the Notion type name and implement
    ``payload()``; ``to_notion()`` wraps it into an API block object.
    """
    block_type: ClassVar[str] = ""

    def payload(self) -> dict:
        raise NotImplementedError

    def to_notion(self) -> dict:
        block_type = self.block_type
        return {"type": block_type, block_type: self.payload()}


@dataclass(frozen=True)
class Paragraph(Block):
    text_runs: tuple[TextRun, ...]
    block_type: ClassVar[str] = "paragraph"

    def payload(self) -> dict:
        return {"rich_text": _rich_text(self.text_runs)}


@dataclass(frozen=True)
class Heading(Block):
    level: int  # 1, 2 or 3
    text_runs: tuple[TextRun, ...]

    @property
    def block_type(self) -> str:  # type: ignore[override]
        return f"heading_{self.level}"

    def payload(self) -> dict:
        return {"rich_text": _rich_text(self.text_runs)}


@dataclass(frozen=True)
class _ListItem(Block):
    text_runs: tuple[TextRun, ...]
    children: Optional[tuple[Block, ...]] = None

    def __post_init__(self):
        # Absent, never empty: Notion rejects an empty children array
        if self.children is not None:
            children = tuple(self.children)
            object.__setattr__(self, "children", children or None)

    def payload(self) -> dict:
        data: dict = {"rich_text": _rich_text(self.text_runs)}
        if self.children:
            data["children"] = [child.to_notion() for child in self.children]
        return data


@dataclass(frozen=True)
class BulletedListItem(_ListItem):
    block_type: ClassVar[str] = "bulleted_list_item"


@dataclass(frozen=True)
class NumberedListItem(_ListItem):
    block_type: ClassVar[str] = "numbered_list_item"


@dataclass(frozen=True)
class ToDo(Block):
    text_runs: tuple[TextRun, ...]
    checked: bool = False
    block_type: ClassVar[str] = "to_do"

    def payload(self) -> dict:
        return {"rich_text": _rich_text(self.text_runs), "checked": self.checked}


@dataclass(frozen=True)
class Code(Block):
    source_text: str
    language: str = "plain text"
    block_type: ClassVar[str] = "code"

    def payload(self) -> dict:
        # Verbatim source, only split to respect the rich_text length limit
        return {
            "rich_text": _rich_text(chunk_text(self.source_text)),
            "language": self.language,
        }


@dataclass(frozen=True)
class Quote(Block):
    text_runs: tuple[TextRun, ...]
    block_type: ClassVar[str] = "quote"

    def payload(self) -> dict:
        return {"rich_text": _rich_text(self.text_runs)}


@dataclass(frozen=True)
class Divider(Block):
    block_type: ClassVar[str] = "divider"

    def payload(self) -> dict:
        return {}


@dataclass(frozen=True)
class Image(Block):
    url: str
    caption: tuple[TextRun, ...] = ()
    block_type: ClassVar[str] = "image"

    def payload(self) -> dict:
        data: dict = {"type": "external", "external": {"url": self.url}}
        if self.caption:
            data["caption"] = _rich_text(self.caption)
        return data


# =============================================================================
# Block Factory
# =============================================================================

# Fence annotations that differ from Notion's language names
CODE_LANGUAGE_ALIASES = {
    "js": "javascript",
    "jsx": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "py": "python",
    "rb": "ruby",
    "rs": "rust",
    "golang": "go",
    "kt": "kotlin",
    "cpp": "c++",
    "cs": "c#",
    "csharp": "c#",
    "fsharp": "f#",
    "sh": "shell",
    "bash": "shell",
    "zsh": "shell",
    "console": "shell",
    "ps1": "powershell",
    "yml": "yaml",
    "md": "markdown",
    "tex": "latex",
    "dockerfile": "docker",
    "proto": "protobuf",
    "objc": "objective-c",
    "text": "plain text",
    "txt": "plain text",
    "plaintext": "plain text",
}

# Languages accepted by the Notion API for code blocks
NOTION_CODE_LANGUAGES = frozenset({
    "abap", "arduino", "bash", "basic", "c", "clojure", "coffeescript", "c++",
    "c#", "css", "dart", "diff", "docker", "elixir", "elm", "erlang", "flow",
    "fortran", "f#", "gherkin", "glsl", "go", "graphql", "groovy", "haskell",
    "html", "java", "javascript", "json", "julia", "kotlin", "latex", "less",
    "lisp", "livescript", "lua", "makefile", "markdown", "markup", "matlab",
    "mermaid", "nix", "objective-c", "ocaml", "pascal", "perl", "php",
    "plain text", "powershell", "prolog", "protobuf", "python", "r", "reason",
    "ruby", "rust", "sass", "scala", "scheme", "scss", "shell", "sql", "swift",
    "typescript", "vb.net", "verilog", "vhdl", "visual basic", "webassembly",
    "xml", "yaml", "java/c/c++/c#",
})


def resolve_code_language(language: Optional[str]) -> str:
    """Map a fence annotation to a Notion code language ("plain text" if unknown)."""
    words = (language or "").split()
    if not words:
        return "plain text"
    normalized = words[0].lower()
    normalized = CODE_LANGUAGE_ALIASES.get(normalized, normalized)
    if normalized in NOTION_CODE_LANGUAGES:
        return normalized
    return "plain text"


def make_paragraph(text: str) -> Paragraph:
    return Paragraph(tuple(to_text_runs(text)))


def make_heading(level: int, text: str) -> Heading:
    """Heading block; levels deeper than 3 are clamped to 3."""
    return Heading(min(max(level, 1), 3), tuple(to_text_runs(text)))


def make_bulleted_list_item(
    text: str,
    children: Optional[Sequence[Block]] = None
) -> BulletedListItem:
    return BulletedListItem(tuple(to_text_runs(text)), tuple(children) if children else None)


def make_numbered_list_item(
    text: str,
    children: Optional[Sequence[Block]] = None
) -> NumberedListItem:
    return NumberedListItem(tuple(to_text_runs(text)), tuple(children) if children else None)


def make_to_do(text: str, checked: bool = False) -> ToDo:
    return ToDo(tuple(to_text_runs(text)), checked)


def make_code(source: str, language: Optional[str] = None) -> Code:
    """Code block. The source is kept verbatim (no Markdown stripping)."""
    return Code(source or "", resolve_code_language(language))


def make_quote(text: str) -> Quote:
    return Quote(tuple(to_text_runs(text)))


def make_divider() -> Divider:
    return Divider()


def _is_valid_image_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def make_image(url: str, caption: Optional[str] = None) -> Block:
    """External image block.

    A malformed URL degrades to a paragraph reading
    ``[Image: <caption-or-url>]`` so one bad image never aborts a document.
    """
    if not _is_valid_image_url(url):
        return make_paragraph(f"[Image: {caption or url}]")
    caption_runs = tuple(to_text_runs(caption)) if caption else ()
    return Image(url, caption_runs)


# =============================================================================
# Markdown → Blocks
# =============================================================================

# Notion accepts two levels of nesting below a top-level block
MAX_NESTING_DEPTH = 3

# GFM task list marker at the start of a list item: "[ ] ", "[x] ", "[X] "
TASK_MARKER_PATTERN = re.compile(r'^\[([ xX])\](?:\s+|$)')

LIST_NODE_TYPES = ("bullet_list", "ordered_list")


def _create_markdown_parser() -> MarkdownIt:
    """CommonMark plus GFM strikethrough and tables (tables are reported, not converted)."""
    return MarkdownIt("commonmark").enable(["strikethrough", "table"])


MARKDOWN_PARSER = _create_markdown_parser()


@dataclass
class ConversionResult:
    """Blocks produced from one Markdown document, with non-fatal warnings."""
    blocks: list[Block]
    warnings: list[str] = field(default_factory=list)

    @property
    def block_count(self) -> int:
        return len(self.blocks)


class MarkdownConverter:
    """Converts Markdown to Notion blocks.

    Warnings are collected per ``convert()`` call and exposed through
    ``warnings`` until the next call. Use one instance per conversion
    flow; instances share no state with each other.
    """

    def __init__(self, parser: Optional[MarkdownIt] = None):
        self._parser = parser or MARKDOWN_PARSER
        self._warnings: list[str] = []

    def convert(self, markdown: Optional[str]) -> list[Block]:
        """Convert a Markdown document into an ordered list of blocks."""
        self._warnings = []
        if not markdown or not markdown.strip():
            return []

        root = SyntaxTreeNode(self._parser.parse(markdown))
        return _process_nodes(root.children, self._warnings)

    @property
    def warnings(self) -> list[str]:
        """Warnings from the most recent ``convert()`` call (a copy)."""
        return list(self._warnings)


def markdown_to_blocks(markdown: Optional[str]) -> ConversionResult:
    """Convert Markdown to blocks, returning blocks and warnings together."""
    converter = MarkdownConverter()
    blocks = converter.convert(markdown)
    return ConversionResult(blocks=blocks, warnings=converter.warnings)


def _process_nodes(nodes: Sequence[SyntaxTreeNode], warnings: list[str]) -> list[Block]:
    blocks: list[Block] = []
    for node in nodes:
        blocks.extend(_process_node(node, warnings))
    return blocks


def _process_node(node: SyntaxTreeNode, warnings: list[str]) -> list[Block]:
    """Convert one block-level node into zero or more blocks."""
    node_type = node.type

    if node_type == "heading":
        return [make_heading(int(node.tag[1:]), _inline_content(node))]

    elif node_type == "paragraph":
        return _process_paragraph(node)

    elif node_type in ("fence", "code_block"):
        return [_process_code(node)]

    elif node_type == "blockquote":
        return _process_blockquote(node, warnings)

    elif node_type in LIST_NODE_TYPES:
        return _process_list_items(
            node.children, node_type == "ordered_list", 1, warnings
        )

    elif node_type == "hr":
        return [make_divider()]

    elif node_type == "html_block":
        raw = node.content.strip()
        return [make_paragraph(raw)] if raw else []

    warnings.append(f"Unknown token type: {node_type}")
    return []


def _inline_node(node: SyntaxTreeNode) -> Optional[SyntaxTreeNode]:
    for child in node.children:
        if child.type == "inline":
            return child
    return None


def _inline_content(node: SyntaxTreeNode) -> str:
    """Raw inline Markdown source of a heading or paragraph."""
    inline = _inline_node(node)
    return inline.content if inline is not None else ""


def _inline_markdown(node: SyntaxTreeNode) -> str:
    """Rebuild Markdown source for an inline node (used around images)."""
    node_type = node.type

    if node_type in ("softbreak", "hardbreak"):
        return "\n"
    if node_type == "code_inline":
        return f"{node.markup}{node.content}{node.markup}"
    if node_type == "image":
        return f"![{node.content}]({node.attrs.get('src', '')})"

    inner = "".join(_inline_markdown(child) for child in node.children)
    if node_type == "link":
        return f"[{inner}]({node.attrs.get('href', '')})"
    if node_type in ("strong", "em", "s"):
        return f"{node.markup}{inner}{node.markup}"
    if node.children:
        return inner
    return node.content


# Inline image syntax in raw source: ![alt](destination "title")
IMAGE_SOURCE_PATTERN = re.compile(r'(?<!\\)!\[(?:[^\[\]\\]|\\.)*\]\((?:[^()\\]|\\.)*\)')


def _split_source_around_images(source: str, image_count: int) -> Optional[list[str]]:
    """Raw Markdown between inline images, or None if the images can't be located.

    Images inside links or code spans, and reference-style images, make the
    match count differ from the parsed image count.
    """
    matches = list(IMAGE_SOURCE_PATTERN.finditer(source))
    if len(matches) != image_count:
        return None

    pieces = []
    start = 0
    for match in matches:
        pieces.append(source[start:match.start()])
        start = match.end()
    pieces.append(source[start:])
    return pieces


def _rebuild_around_images(inline: SyntaxTreeNode) -> list[str]:
    pieces = [""]
    for child in inline.children:
        if child.type == "image":
            pieces.append("")
        else:
            pieces[-1] += _inline_markdown(child)
    return pieces


def _process_paragraph(node: SyntaxTreeNode) -> list[Block]:
    """Paragraph → one paragraph block, or text/image/text blocks around images."""
    inline = _inline_node(node)
    if inline is None:
        return []

    images = [child for child in inline.children if child.type == "image"]
    if not images:
        text = inline.content
        return [make_paragraph(text)] if text.strip() else []

    pieces = _split_source_around_images(inline.content, len(images))
    if pieces is None:
        pieces = _rebuild_around_images(inline)

    blocks: list[Block] = []
    for index, piece in enumerate(pieces):
        text = piece.strip()
        if text:
            blocks.append(make_paragraph(text))
        if index < len(images):
            image = images[index]
            caption = image.content or str(image.attrs.get("title") or "") or None
            blocks.append(make_image(str(image.attrs.get("src", "")), caption))

    return blocks


def _process_code(node: SyntaxTreeNode) -> Block:
    source = node.content
    if source.endswith("\n"):
        source = source[:-1]
    language = node.info if node.type == "fence" else None
    return make_code(source, language)


def _process_blockquote(node: SyntaxTreeNode, warnings: list[str]) -> list[Block]:
    """Each paragraph becomes its own quote; other content is converted recursively."""
    blocks: list[Block] = []

    for child in node.children:
        if child.type == "paragraph":
            blocks.append(make_quote(_inline_content(child)))
            continue

        for block in _process_node(child, warnings):
            if isinstance(block, Paragraph):
                # Runs are already plain text; keep the first one as is
                blocks.append(Quote(block.text_runs[:1] or (TextRun(""),)))
            else:
                blocks.append(block)

    return blocks


def _process_list_items(
    items: Sequence[SyntaxTreeNode],
    ordered: bool,
    depth: int,
    warnings: list[str]
) -> list[Block]:
    """Convert list items at ``depth`` (1-based).

    Items hoisted out of an over-deep nested list are placed right after
    the item that contained them.
    """
    blocks: list[Block] = []
    for item in items:
        block, hoisted = _process_list_item(item, ordered, depth, warnings)
        blocks.append(block)
        blocks.extend(hoisted)
    return blocks


def _process_list_item(
    item: SyntaxTreeNode,
    ordered: bool,
    depth: int,
    warnings: list[str]
) -> tuple[Block, list[Block]]:
    """Convert one list item.

    Returns:
        Tuple of (block, siblings_to_hoist). Nested lists become children
        while ``depth < MAX_NESTING_DEPTH``; past that they are built at the
        same depth and returned as siblings so no content is dropped.
    """
    text_parts: list[str] = []
    nested_lists: list[SyntaxTreeNode] = []

    for child in item.children:
        if child.type in LIST_NODE_TYPES:
            nested_lists.append(child)
        elif child.type == "paragraph":
            text_parts.append(_inline_content(child))
        else:
            warnings.append(f"Unsupported content in list item skipped: {child.type}")

    text = "".join(text_parts)

    task_match = TASK_MARKER_PATTERN.match(text)
    if task_match:
        block = make_to_do(text[task_match.end():], task_match.group(1).lower() == "x")
        hoisted: list[Block] = []
        if nested_lists:
            warnings.append("Nested list under checklist item flattened to siblings.")
            for nested in nested_lists:
                hoisted.extend(_process_list_items(
                    nested.children, nested.type == "ordered_list", depth, warnings
                ))
        return block, hoisted

    children: list[Block] = []
    hoisted = []
    for nested in nested_lists:
        nested_ordered = nested.type == "ordered_list"
        if depth < MAX_NESTING_DEPTH:
            children.extend(_process_list_items(
                nested.children, nested_ordered, depth + 1, warnings
            ))
        else:
            warnings.append(
                f"Nested list at depth {depth + 1} exceeds maximum depth of "
                f"{MAX_NESTING_DEPTH}. Flattening to siblings."
            )
            hoisted.extend(_process_list_items(
                nested.children, nested_ordered, depth, warnings
            ))

    if ordered:
        return make_numbered_list_item(text, children), hoisted
    return make_bulleted_list_item(text, children), hoisted


# =============================================================================
# Notion API Client
# =============================================================================

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2025-09-03"

# Notion's per-request limit for children arrays and page sizes
NOTION_BLOCK_LIMIT = 100

_SUPPORTED_METHODS = ("GET", "POST", "PATCH", "DELETE")


def _notion_headers() -> dict:
    return {
        "Authorization": f"Bearer {_get_token()}",
        "Notion-Version": NOTION_VERSION,
        "Content-Type": "application/json",
    }


def _notion_request(
    method: str,
    endpoint: str,
    json_body: Optional[dict] = None
) -> dict:
    """Make an authenticated synchronous request to the Notion API."""
    if method not in _SUPPORTED_METHODS:
        raise ValueError(f"Unsupported method: {method}")
    headers = _notion_headers()
    url = f"{NOTION_API_BASE}{endpoint}"

    with httpx.Client(timeout=30.0) as client:
        body = (json_body or {}) if method in ("POST", "PATCH") else None
        response = client.request(method, url, headers=headers, json=body)
        response.raise_for_status()
        return response.json()


async def _notion_request_async(
    method: str,
    endpoint: str,
    json_body: Optional[dict] = None
) -> dict:
    """Make an authenticated async request with rate limiting and retry.

    Concurrency is bounded by a shared semaphore. HTTP 429 responses are
    retried with exponential backoff; the last 429 is raised as an
    ``httpx.HTTPStatusError`` like any other error status.
    """
    if method not in _SUPPORTED_METHODS:
        raise ValueError(f"Unsupported method: {method}")
    headers = _notion_headers()
    sem = _get_semaphore()
    client = await _get_async_client()

    url = f"{NOTION_API_BASE}{endpoint}"
    body = (json_body or {}) if method in ("POST", "PATCH") else None

    async with sem:
        attempt = 0
        while True:
            response = await client.request(method, url, headers=headers, json=body)

            if response.status_code == 429 and attempt < MAX_RETRIES - 1:
                retry_after = float(response.headers.get("Retry-After", RETRY_BASE_DELAY))
                delay = _compute_retry_delay(attempt, retry_after)
                logger.warning(f"Rate limited, waiting {delay:.1f}s (attempt {attempt + 1})")
                await asyncio.sleep(delay)
                attempt += 1
                continue

            response.raise_for_status()
            return response.json()


async def append_block_children_async(
    block_id: str,
    children: list[dict],
    after_id: Optional[str] = None
) -> dict:
    """Append up to NOTION_BLOCK_LIMIT blocks to a page or block.

    Returns:
        The API response; ``results`` holds the created top-level blocks.
    """
    body: dict = {"children": children}
    if after_id:
        body["after"] = after_id
    return await _notion_request_async("PATCH", f"/blocks/{block_id}/children", json_body=body)


async def list_block_children_async(
    block_id: str,
    start_cursor: Optional[str] = None,
    page_size: Optional[int] = None
) -> dict:
    """Fetch one page of a block's children ({results, has_more, next_cursor})."""
    query: dict = {"page_size": min(page_size or NOTION_BLOCK_LIMIT, NOTION_BLOCK_LIMIT)}
    if start_cursor:
        query["start_cursor"] = start_cursor
    return await _notion_request_async("GET", f"/blocks/{block_id}/children?{urlencode(query)}")


async def delete_block_async(block_id: str) -> dict:
    """Delete (archive) a block."""
    return await _notion_request_async("DELETE", f"/blocks/{block_id}")


async def create_page_async(body: dict) -> dict:
    return await _notion_request_async("POST", "/pages", json_body=body)


DEFAULT_SEARCH_SORT = {"direction": "descending", "timestamp": "last_edited_time"}
SEARCH_SORT_DIRECTIONS = ("ascending", "descending")


async def search_async(
    query: str,
    page_size: int = 10,
    start_cursor: Optional[str] = None,
    sort: Optional[dict] = None
) -> dict:
    """Search the workspace (most recently edited first unless ``sort`` is given)."""
    body: dict = {
        "query": query,
        "page_size": min(max(page_size, 1), NOTION_BLOCK_LIMIT),
        "sort": sort or DEFAULT_SEARCH_SORT,
    }
    if start_cursor:
        body["start_cursor"] = start_cursor
    return await _notion_request_async("POST", "/search", json_body=body)


def get_page_title(page: dict) -> str:
    """Extract the title from page properties."""
    for prop in page.get("properties", {}).values():
        if prop.get("type") == "title":
            title_array = prop.get("title", [])
            return "".join(t.get("plain_text", "") for t in title_array)
    return "Untitled"


# =============================================================================
# Batch Mutations
# =============================================================================

@dataclass(frozen=True)
class BatchError:
    """A failed append request, by 0-based batch index."""
    batch_index: int
    error: str


@dataclass(frozen=True)
class BatchResult:
    """Outcome of appending blocks in NOTION_BLOCK_LIMIT-sized batches."""
    success: bool
    total_blocks: int
    batch_count: int
    successful_batches: int
    results: tuple[dict, ...] = ()
    errors: tuple[BatchError, ...] = ()

    def error_summary(self) -> str:
        return "; ".join(f"Batch {e.batch_index}: {e.error}" for e in self.errors)


@dataclass(frozen=True)
class DeleteResult:
    """Outcome of a best-effort delete loop."""
    deleted_count: int
    errors: tuple[str, ...] = ()


def chunk_blocks(items: Sequence[Any], chunk_size: int = NOTION_BLOCK_LIMIT) -> list[list[Any]]:
    """Split a sequence into ordered chunks of at most ``chunk_size`` items."""
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return [list(items[i:i + chunk_size]) for i in range(0, len(items), chunk_size)]


def _block_payload(block: Union[Block, dict]) -> dict:
    return block.to_notion() if isinstance(block, Block) else block


async def append_blocks_in_batches(
    container_id: str,
    blocks: Sequence[Union[Block, dict]]
) -> BatchResult:
    """Append blocks to a container, NOTION_BLOCK_LIMIT per request.

    Batches are sent one after another so the container ends up in the
    original order. A failed batch is recorded and the remaining batches
    are still sent.

    Args:
        container_id: UUID of the parent page or block.
        blocks: Blocks (or pre-built Notion block dicts) to append.

    Returns:
        BatchResult; ``success`` is True only if every batch succeeded.
    """
    if not blocks:
        return BatchResult(success=True, total_blocks=0, batch_count=0, successful_batches=0)

    batches = chunk_blocks(blocks)
    results: list[dict] = []
    errors: list[BatchError] = []

    for index, batch in enumerate(batches):
        try:
            response = await append_block_children_async(
                container_id, [_block_payload(b) for b in batch]
            )
        except Exception as e:
            detail = _describe_error(e)
            logger.warning(
                f"Append batch {index + 1}/{len(batches)} to {container_id} failed: {detail}"
            )
            errors.append(BatchError(batch_index=index, error=detail))
            continue
        results.append(response)

    return BatchResult(
        success=not errors,
        total_blocks=len(blocks),
        batch_count=len(batches),
        successful_batches=len(results),
        results=tuple(results),
        errors=tuple(errors),
    )


async def fetch_all_child_ids(container_id: str) -> list[str]:
    """IDs of every direct child of a container, in order, across all pages."""
    child_ids: list[str] = []
    cursor: Optional[str] = None

    while True:
        response = await list_block_children_async(
            container_id, start_cursor=cursor, page_size=NOTION_BLOCK_LIMIT
        )
        child_ids.extend(b["id"] for b in response.get("results", []) if "id" in b)

        cursor = response.get("next_cursor") if response.get("has_more") else None
        if not cursor:
            break

    return child_ids


async def delete_blocks_by_ids(block_ids: Sequence[str]) -> DeleteResult:
    """Delete blocks one at a time, continuing past individual failures."""
    deleted_count = 0
    errors: list[str] = []

    for block_id in block_ids:
        try:
            await delete_block_async(block_id)
        except Exception as e:
            errors.append(f"{block_id}: {_describe_error(e)}")
            continue
        deleted_count += 1

    return DeleteResult(deleted_count=deleted_count, errors=tuple(errors))


async def delete_all_children(container_id: str) -> int:
    """Delete every child of a container (best effort).

    Returns:
        Number of blocks actually deleted.
    """
    child_ids = await fetch_all_child_ids(container_id)
    result = await delete_blocks_by_ids(child_ids)
    for error in result.errors:
        logger.warning(f"Failed to delete block {error}")
    return result.deleted_count


# =============================================================================
# Page Rewrite
# =============================================================================

# Number of individual delete errors quoted in a rewrite summary
MAX_DELETE_ERROR_PREVIEW = 3


class RewriteError(Exception):
    """A rewrite stopped before touching the page's existing content."""

    def __init__(
        self,
        code: str,
        message: str,
        batch_result: Optional[BatchResult] = None
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.batch_result = batch_result


@dataclass
class RewriteResult:
    """Summary of a completed rewrite."""
    page_id: str
    added: int
    batch_count: int
    deleted: int
    warnings: list[str] = field(default_factory=list)
    delete_errors: list[str] = field(default_factory=list)

    def summary(self) -> str:
        lines = [
            f"Page rewrite completed for {self.page_id}",
            f"Added: {self.added} new block(s) in {self.batch_count} batch(es)",
            f"Deleted: {self.deleted} existing block(s)",
        ]
        if self.warnings:
            lines.append(f"Conversion warnings: {'; '.join(self.warnings)}")
        if self.delete_errors:
            preview = "; ".join(self.delete_errors[:MAX_DELETE_ERROR_PREVIEW])
            overflow = len(self.delete_errors) - MAX_DELETE_ERROR_PREVIEW
            if overflow > 0:
                preview += f" (+{overflow} more)"
            lines.append(f"Note: Some old blocks could not be deleted: {preview}")
        return "\n".join(lines)


def _append_failure_message(page_id: str, batch: BatchResult) -> str:
    if batch.successful_batches > 0:
        note = "Some new blocks were added but original content remains."
    else:
        note = "No new blocks were added."
    return "\n".join([
        f"Failed to append new content to page {page_id}",
        "Original content has been preserved (no data lost).",
        f"Successful batches: {batch.successful_batches}/{batch.batch_count}",
        f"Errors: {batch.error_summary()}",
        f"Note: {note}",
    ])


async def rewrite_page(
    page_id: str,
    markdown: str,
    validate_before_delete: bool = True
) -> RewriteResult:
    """Replace a page's content with Markdown, appending before deleting.

    Steps:
    1. Convert the Markdown; zero blocks is an error (nothing touched).
    2. With ``validate_before_delete``, capture the current child IDs.
    3. Append the new blocks. If any batch fails, stop: nothing is deleted.
    4. Delete the old children (best effort; failures become notes).

    Without ``validate_before_delete`` no IDs are captured, so nothing is
    deleted: the new content is appended after the old.

    Raises:
        RewriteError: EMPTY_CONVERSION or APPEND_FAILED.
        httpx.HTTPError: If listing the existing children fails.
    """
    conversion = markdown_to_blocks(markdown)
    if not conversion.blocks:
        raise RewriteError(
            "EMPTY_CONVERSION",
            "Markdown conversion resulted in 0 blocks. Please provide valid Markdown content."
        )

    existing_ids: list[str] = []
    if validate_before_delete:
        existing_ids = await fetch_all_child_ids(page_id)

    batch = await append_blocks_in_batches(page_id, conversion.blocks)
    if not batch.success:
        raise RewriteError("APPEND_FAILED", _append_failure_message(page_id, batch), batch)

    deletion = await delete_blocks_by_ids(existing_ids) if existing_ids else DeleteResult(0)

    return RewriteResult(
        page_id=page_id,
        added=batch.total_blocks,
        batch_count=batch.batch_count,
        deleted=deletion.deleted_count,
        warnings=list(conversion.warnings),
        delete_errors=list(deletion.errors),
    )


# =============================================================================
# Notion → Markdown
# =============================================================================

# Block types whose children are fetched and rendered
PARENT_BLOCK_TYPES = {
    'paragraph', 'heading_1', 'heading_2', 'heading_3',
    'bulleted_list_item', 'numbered_list_item', 'to_do',
    'toggle', 'quote', 'callout', 'table'
}

LIST_BLOCK_TYPES = {'bulleted_list_item', 'numbered_list_item', 'to_do'}


async def _fetch_children_one_level(block_id: str) -> list[dict]:
    """Fetch all immediate children of a block (raises on API errors)."""
    blocks: list[dict] = []
    cursor: Optional[str] = None

    while True:
        result = await list_block_children_async(block_id, start_cursor=cursor)
        blocks.extend(result.get("results", []))
        cursor = result.get("next_cursor") if result.get("has_more") else None
        if not cursor:
            break

    return blocks


async def fetch_block_tree_async(block_id: str, depth: int = 10) -> list[dict]:
    """Fetch a block's children recursively into ``_children``.

    Levels are fetched breadth-first with the blocks of one level fetched
    in parallel. A failure on the first level propagates; failures deeper
    down are logged and leave that block without children.
    """
    if depth <= 0:
        return []

    blocks = await _fetch_children_one_level(block_id)

    current_depth = 1
    current_level_blocks = blocks

    while current_depth < depth:
        blocks_needing_children = [
            b for b in current_level_blocks
            if b.get("has_children") and b.get("type") in PARENT_BLOCK_TYPES
        ]
        if not blocks_needing_children:
            break

        children_lists = await asyncio.gather(
            *[_fetch_children_one_level(b["id"]) for b in blocks_needing_children],
            return_exceptions=True
        )

        next_level_blocks = []
        for block, children in zip(blocks_needing_children, children_lists):
            if isinstance(children, Exception):
                logger.warning(f"Failed to fetch children of {block['id']}: {children}")
                children = []
            block["_children"] = children
            next_level_blocks.extend(children)

        current_level_blocks = next_level_blocks
        current_depth += 1

    return blocks


def rich_text_to_markdown(rich_text: list[dict]) -> str:
    """Render a Notion rich_text array as inline Markdown."""
    if not rich_text:
        return ""

    parts = []
    for item in rich_text:
        item_type = item.get("type", "text")

        if item_type == "equation":
            expr = item.get("equation", {}).get("expression", "")
            parts.append(f"${expr}$")
            continue

        if item_type == "mention":
            parts.append(item.get("plain_text", ""))
            continue

        text_obj = item.get("text", {})
        content = text_obj.get("content", item.get("plain_text", ""))
        link = text_obj.get("link")
        annotations = item.get("annotations", {})

        result = content
        if result.strip():
            if annotations.get("code"):
                result = f"`{result}`"
            else:
                if annotations.get("bold"):
                    result = f"**{result}**"
                if annotations.get("italic"):
                    result = f"*{result}*"
                if annotations.get("strikethrough"):
                    result = f"~~{result}~~"

        if link and link.get("url"):
            result = f"[{result}]({link['url']})"

        parts.append(result)

    return "".join(parts)


def _plain_text(rich_text: list[dict]) -> str:
    return "".join(t.get("plain_text", t.get("text", {}).get("content", "")) for t in rich_text)


def _file_url(data: dict) -> str:
    return data.get("external", {}).get("url") or data.get("file", {}).get("url") or ""


def _indent(text: str, prefix: str) -> str:
    return "\n".join(f"{prefix}{line}" if line else line for line in text.split("\n"))


def _render_table(block: dict) -> str:
    rows = []
    for row in block.get("_children", []):
        cells = row.get("table_row", {}).get("cells", [])
        rows.append("| " + " | ".join(rich_text_to_markdown(c) for c in cells) + " |")
    if not rows:
        return "<!-- [table block - not rendered] -->"
    width = rows[0].count(" | ") + 1
    separator = "| " + " | ".join(["---"] * width) + " |"
    return "\n".join([rows[0], separator, *rows[1:]])


def _render_placeholder(block_type: str, data: dict) -> str:
    """Readable stand-ins for blocks without a Markdown equivalent."""
    if block_type == "child_page":
        return f"📄 **[Child Page: {data.get('title') or 'Untitled'}]**"
    if block_type == "child_database":
        return f"📊 **[Child Database: {data.get('title') or 'Untitled'}]**"
    if block_type == "bookmark":
        url = data.get("url", "")
        caption = _plain_text(data.get("caption", [])[:1]) or url
        return f"🔖 [{caption}]({url})" if url else "<!-- [Bookmark - no URL] -->"
    if block_type == "video":
        url = _file_url(data)
        return f"🎬 [Video]({url})" if url else "<!-- [Video block] -->"
    if block_type == "file":
        url = _file_url(data)
        name = data.get("name") or "File"
        return f"📎 [{name}]({url})" if url else "<!-- [File block] -->"
    if block_type == "pdf":
        url = _file_url(data)
        return f"📄 [PDF]({url})" if url else "<!-- [PDF block] -->"
    if block_type == "embed":
        url = data.get("url", "")
        return f"🔗 [Embed]({url})" if url else "<!-- [Embed block] -->"
    return f"<!-- [{block_type} block - not rendered] -->"


def render_block_to_markdown(block: dict, number: int = 1) -> str:
    """Render one Notion block (with ``_children``) to Markdown.

    Args:
        block: Notion block object.
        number: Position of a numbered list item within its run.

    Returns:
        Markdown text for the block and its children.
    """
    block_type = block.get("type", "unsupported")
    data = block.get(block_type) or {}
    children = block.get("_children", [])
    text = rich_text_to_markdown(data.get("rich_text", []))

    if block_type == "paragraph":
        content = text

    elif block_type in ("heading_1", "heading_2", "heading_3"):
        content = "#" * int(block_type[-1]) + " " + text

    elif block_type in LIST_BLOCK_TYPES:
        if block_type == "numbered_list_item":
            marker = f"{number}. "
        elif block_type == "to_do":
            marker = "- [x] " if data.get("checked") else "- [ ] "
        else:
            marker = "- "
        content = marker + text
        if children:
            # Children line up under the item's text
            content += "\n" + _indent(render_blocks_to_markdown(children), " " * len(marker))
        return content

    elif block_type == "quote":
        content = _indent(text, "> ")

    elif block_type == "callout":
        icon = data.get("icon") or {}
        emoji = icon.get("emoji", "") if icon.get("type") == "emoji" else ""
        content = _indent(f"{emoji} {text}" if emoji else text, "> ")

    elif block_type == "code":
        language = data.get("language", "")
        if language == "plain text":
            language = ""
        code_content = _plain_text(data.get("rich_text", []))
        return f"```{language}\n{code_content}\n```"

    elif block_type == "divider":
        return "---"

    elif block_type == "image":
        caption = _plain_text(data.get("caption", []))
        return f"![{caption}]({_file_url(data)})"

    elif block_type == "equation":
        return f"$$\n{data.get('expression', '')}\n$$"

    elif block_type == "toggle":
        inner = render_blocks_to_markdown(children)
        body = f"\n\n{inner}\n" if inner else "\n"
        return f"<details>\n<summary>{text}</summary>{body}</details>"

    elif block_type == "table":
        return _render_table(block)

    else:
        return _render_placeholder(block_type, data)

    if children:
        rendered_children = render_blocks_to_markdown(children)
        if block_type in ("quote", "callout"):
            rendered_children = _indent(rendered_children, "> ")
            return f"{content}\n>\n{rendered_children}"
        return f"{content}\n\n{rendered_children}"
    return content


def render_blocks_to_markdown(blocks: list[dict]) -> str:
    """Render sibling blocks; consecutive list items are kept tight."""
    parts: list[str] = []
    previous_type: Optional[str] = None
    number = 0

    for block in blocks:
        block_type = block.get("type", "unsupported")
        if block_type == "numbered_list_item" and previous_type == "numbered_list_item":
            number += 1
        else:
            number = 1

        if parts:
            tight = block_type in LIST_BLOCK_TYPES and previous_type in LIST_BLOCK_TYPES
            parts.append("\n" if tight else "\n\n")
        parts.append(render_block_to_markdown(block, number))
        previous_type = block_type

    return "".join(parts)


async def _container_to_markdown(container_id: str, kind: str) -> str:
    try:
        blocks = await fetch_block_tree_async(container_id)
    except Exception as e:
        logger.error(f"Error converting {kind} {container_id} to Markdown: {e}")
        raise
    return render_blocks_to_markdown(blocks)


async def page_to_markdown(page_id: str) -> str:
    """Convert a page's content to Markdown."""
    return await _container_to_markdown(page_id, "page")


async def block_to_markdown(block_id: str) -> str:
    """Convert a block's children to Markdown."""
    return await _container_to_markdown(block_id, "block")


# =============================================================================
# Markdown Responses
# =============================================================================

TRUNCATION_SUFFIX = "\n\n...(truncated)"
MARKDOWN_ERROR_PLACEHOLDER = "[Error: Could not convert page to Markdown]"


def truncate_markdown(markdown: str, max_chars: int) -> tuple[str, bool]:
    """Cut Markdown to ``max_chars`` characters plus a truncation marker.

    Returns:
        Tuple of (markdown, truncated).
    """
    if len(markdown) <= max_chars:
        return markdown, False
    return markdown[:max_chars] + TRUNCATION_SUFFIX, True


async def retrieve_markdown_envelope(block_id: str, max_chars: Optional[int] = None) -> dict:
    """Children of a block as a Markdown envelope. Converter errors propagate."""
    limit = max_chars if max_chars is not None else get_markdown_max_chars()
    markdown, truncated = truncate_markdown(await block_to_markdown(block_id), limit)
    return {
        "block_id": block_id,
        "blocks": [],
        "markdown": markdown,
        "markdown_truncated": truncated,
    }


async def search_with_markdown(
    query: str,
    page_size: int = 10,
    start_cursor: Optional[str] = None,
    max_chars: Optional[int] = None,
    sort: Optional[dict] = None
) -> dict:
    """Search pages and attach each page's Markdown.

    A page that fails to convert gets MARKDOWN_ERROR_PLACEHOLDER instead of
    failing the whole search.
    """
    limit = max_chars if max_chars is not None else get_markdown_max_chars()
    response = await search_async(query, page_size=page_size, start_cursor=start_cursor, sort=sort)

    results = []
    for item in response.get("results", []):
        if item.get("object") != "page":
            continue

        entry: dict = {
            "id": item.get("id", ""),
            "url": item.get("url", ""),
            "title": get_page_title(item),
        }
        try:
            markdown, truncated = truncate_markdown(await page_to_markdown(entry["id"]), limit)
        except Exception:
            markdown, truncated = MARKDOWN_ERROR_PLACEHOLDER, False
        entry["markdown"] = markdown
        entry["markdown_truncated"] = truncated
        results.append(entry)

    return {
        "total": len(response.get("results", [])),
        "has_more": response.get("has_more", False),
        "next_cursor": response.get("next_cursor"),
        "results": results,
    }


# =============================================================================
# Error Formatting
# =============================================================================

def _error(code: str, message: str, hint: str | None = None, ref: str | None = None) -> str:
    """Format a tool error with an optional hint.

    Args:
        code: Error code (e.g., UNKNOWN_ID, REF_GONE)
        message: Human-readable description
        hint: Suggestion on how to fix the issue
        ref: The reference that failed (for context)
    """
    parts = [f"error: {code} - {message}"]
    if ref:
        parts.append(f"ref: {ref}")
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


HINTS = {
    "unknown_id": "Provide a Notion page/block UUID (with or without dashes) or a notion.so URL.",
    "ref_gone": "The object may be deleted, in trash, or not shared with this integration.",
    "missing_capability": "Share the page with the integration: open in Notion → Share → invite the integration.",
    "rate_limited": "Too many requests. Wait a moment and try again.",
    "invalid_token": "Token is invalid or expired. Check --token-file or NOTION_TOKEN.",
    "empty_conversion": "Provide Markdown with at least one heading, paragraph, list, quote, code block or divider.",
    "append_failed": "Retry the rewrite; the page still holds its original content.",
    "no_parent": "Pass parent_id or set NOTION_PAGE_ID.",
    "too_large": "Split the Markdown and send it in several calls.",
    "search_sort": 'Use {"direction": "ascending" or "descending", "timestamp": "last_edited_time"}.',
}


def _notion_error(e: Exception, ref: str | None = None) -> str:
    """Map an exception from a Notion call to a tool error string."""
    if isinstance(e, MissingTokenError):
        return _error("NO_TOKEN", str(e), hint=HINTS["invalid_token"])

    if isinstance(e, httpx.HTTPStatusError) and e.response is not None:
        status = e.response.status_code
        if status == 401:
            return _error("INVALID_TOKEN", "Token is invalid or expired", hint=HINTS["invalid_token"])
        elif status == 403:
            return _error(
                "MISSING_CAPABILITY",
                "Integration lacks access to this object",
                hint=HINTS["missing_capability"],
                ref=ref
            )
        elif status == 404:
            return _error("REF_GONE", "Object not found", hint=HINTS["ref_gone"], ref=ref)
        elif status == 400:
            return _error("VALIDATION_ERROR", _http_error_detail(e), ref=ref)
        elif status == 429:
            return _error("RATE_LIMITED", "Too many requests", hint=HINTS["rate_limited"])
        return _error("HTTP_ERROR", f"HTTP {status}: {_http_error_detail(e, 100)}", ref=ref)

    if isinstance(e, httpx.HTTPError):
        return _error("HTTP_ERROR", str(e), ref=ref)

    return _error("UNEXPECTED", f"{type(e).__name__}: {e}", ref=ref)


def _resolve_or_error(ref: str, field_name: str = "target") -> tuple[str | None, str | None]:
    """Resolve a tool's ID argument, returning (uuid, None) or (None, error)."""
    uuid = resolve_notion_id(ref)
    if not uuid:
        return None, _error(
            "UNKNOWN_ID", f"Could not resolve {field_name} ID: {ref}", hint=HINTS["unknown_id"]
        )
    return uuid, None


def _check_markdown_size(markdown: str) -> Optional[str]:
    max_chars = get_markdown_max_chars()
    if len(markdown) > max_chars:
        return _error(
            "INPUT_TOO_LARGE",
            f"Markdown is {len(markdown)} characters; the maximum is {max_chars}",
            hint=HINTS["too_large"]
        )
    return None


def _check_search_sort(sort: dict) -> Optional[str]:
    if (
        sort.get("direction") not in SEARCH_SORT_DIRECTIONS
        or sort.get("timestamp") != "last_edited_time"
    ):
        return _error("INVALID_ARGS", f"Invalid sort: {json.dumps(sort)}", hint=HINTS["search_sort"])
    return None


# =============================================================================
# MCP Server
# =============================================================================

mcp = FastMCP(SERVER_NAME, host="127.0.0.1", port=DEFAULT_HTTP_PORT)


@mcp.tool()
async def notion_append_markdown(
    block_id: str,
    markdown: Optional[str] = None,
    children: Optional[list[dict]] = None
) -> str:
    """Append content to a Notion page or block.

    Args:
        block_id: Parent page/block UUID or Notion URL.
        markdown: Markdown to convert. Supports headings (#, ##, ###),
            paragraphs, code fences, blockquotes (>), lists (-, *, 1.),
            task lists (- [ ], - [x]), horizontal rules (---) and images
            (![alt](url)). Inline formatting is reduced to plain text.
        children: Notion block objects to append as-is.
            Provide exactly one of markdown or children.

    Returns:
        Summary of the append, including batch counts and warnings.
        More than 100 blocks are sent in several requests, in order.
    """
    if markdown and children:
        return _error(
            "INVALID_ARGS",
            "Cannot use both 'children' and 'markdown' parameters. Please use only one."
        )
    if not markdown and not children:
        return _error("INVALID_ARGS", "Either 'children' or 'markdown' parameter is required.")

    target, err = _resolve_or_error(block_id, "block")
    if err:
        return err

    warnings: list[str] = []
    blocks: Sequence[Union[Block, dict]]
    if markdown:
        too_large = _check_markdown_size(markdown)
        if too_large:
            return too_large
        conversion = markdown_to_blocks(markdown)
        if not conversion.blocks:
            return _error(
                "EMPTY_CONVERSION",
                "Markdown conversion resulted in 0 blocks.",
                hint=HINTS["empty_conversion"]
            )
        blocks = conversion.blocks
        warnings = conversion.warnings
    else:
        blocks = children or []

    try:
        result = await append_blocks_in_batches(target, blocks)
    except Exception as e:
        return _notion_error(e, ref=target)

    source = " (converted from Markdown)" if markdown else ""
    if result.success:
        lines = [
            f"Successfully appended {result.total_blocks} block(s) to {target} "
            f"in {result.batch_count} batch(es){source}"
        ]
    else:
        lines = [
            _error(
                "APPEND_FAILED",
                f"Partial success: {result.successful_batches}/{result.batch_count} "
                f"batches succeeded for {result.total_blocks} block(s){source}",
                ref=target
            ),
            f"Errors: {result.error_summary()}",
        ]

    if warnings:
        lines.append(f"Conversion warnings: {'; '.join(warnings)}")

    return "\n".join(lines)


@mcp.tool()
async def notion_rewrite_page(
    page_id: str,
    markdown: str,
    validate_before_delete: bool = True
) -> str:
    """Replace the entire content of a page with Markdown.

    New content is appended first; old blocks are deleted only after every
    new block has been written, so a failure never leaves the page empty.

    Args:
        page_id: Page UUID or Notion URL.
        markdown: New page content in Markdown.
        validate_before_delete: Capture the existing block IDs before
            appending (default True) so exactly those are removed.
            When False, nothing is deleted.

    Returns:
        Counts of added and deleted blocks, warnings, and any blocks that
        could not be deleted.
    """
    target, err = _resolve_or_error(page_id, "page")
    if err:
        return err

    too_large = _check_markdown_size(markdown)
    if too_large:
        return too_large

    try:
        result = await rewrite_page(target, markdown, validate_before_delete)
    except RewriteError as e:
        hint = HINTS["empty_conversion"] if e.code == "EMPTY_CONVERSION" else HINTS["append_failed"]
        return _error(e.code, e.message, hint=hint, ref=target)
    except Exception as e:
        return _notion_error(e, ref=target)

    return result.summary()


def _external_file(url: str) -> dict:
    return {"type": "external", "external": {"url": url}}


@mcp.tool()
async def notion_create_page(
    title: str,
    markdown: Optional[str] = None,
    children: Optional[list[dict]] = None,
    parent_id: Optional[str] = None,
    icon: Optional[str] = None,
    cover: Optional[Union[str, dict]] = None
) -> str:
    """Create a page, optionally with content.

    Args:
        title: Page title.
        markdown: Optional page content in Markdown.
        children: Optional Notion block objects to use as content.
            Provide at most one of markdown or children.
        parent_id: Parent page UUID or URL (default: NOTION_PAGE_ID).
        icon: Optional emoji or image URL.
        cover: Optional cover image URL, or a Notion file object.

    Returns:
        The new page ID and URL, with block counts and warnings.
        More than 100 blocks are appended after the page is created.
    """
    if markdown and children:
        return _error(
            "INVALID_ARGS",
            "Cannot use both 'children' and 'markdown' parameters. Please use only one."
        )

    parent_ref = parent_id or get_root_page_id()
    if not parent_ref:
        return _error("NO_PARENT", "No parent page given", hint=HINTS["no_parent"])
    parent_uuid, err = _resolve_or_error(parent_ref, "parent")
    if err:
        return err

    blocks: Sequence[Union[Block, dict]] = []
    warnings: list[str] = []
    content_info = ""
    if markdown:
        too_large = _check_markdown_size(markdown)
        if too_large:
            return too_large
        conversion = markdown_to_blocks(markdown)
        blocks = conversion.blocks
        warnings = conversion.warnings
        if blocks:
            content_info = f" with {len(blocks)} block(s) from Markdown"
    elif children:
        blocks = children
        content_info = f" with {len(blocks)} block(s)"

    page_body: dict = {
        "parent": {"page_id": parent_uuid},
        "properties": {"title": {"title": _rich_text(chunk_text(title))}},
    }
    if icon:
        if icon.startswith("http"):
            page_body["icon"] = _external_file(icon)
        else:
            page_body["icon"] = {"type": "emoji", "emoji": icon}
    if cover:
        page_body["cover"] = _external_file(cover) if isinstance(cover, str) else cover

    # Create accepts one batch of children; the rest is appended afterwards
    first_batch, remaining = blocks[:NOTION_BLOCK_LIMIT], blocks[NOTION_BLOCK_LIMIT:]
    if first_batch:
        page_body["children"] = [_block_payload(b) for b in first_batch]

    try:
        page = await create_page_async(page_body)
    except Exception as e:
        return _notion_error(e, ref=parent_uuid)

    new_page_id = page.get("id", "")
    lines = [f"Page created successfully: {new_page_id}{content_info}"]
    if page.get("url"):
        lines.append(f"url: {page['url']}")

    if remaining:
        batch = await append_blocks_in_batches(new_page_id, remaining)
        if not batch.success:
            lines.append(
                f"Partial content: {batch.successful_batches}/{batch.batch_count} "
                f"follow-up batch(es) succeeded"
            )
            lines.append(f"Errors: {batch.error_summary()}")

    if warnings:
        lines.append(f"Conversion warnings: {'; '.join(warnings)}")

    return "\n".join(lines)


@mcp.tool()
async def notion_retrieve_block_children(
    block_id: str,
    markdown: Optional[bool] = None,
    start_cursor: Optional[str] = None,
    page_size: Optional[int] = None
) -> str:
    """Read the children of a page or block.

    Args:
        block_id: Page/block UUID or Notion URL.
        markdown: Return Markdown instead of JSON (default from
            NOTION_MCP_MARKDOWN_DEFAULT_FOR_READ). Markdown mode reads all
            children recursively and ignores pagination.
        start_cursor: Cursor from a previous JSON response.
        page_size: Children per page in JSON mode (max 100).

    Returns:
        JSON envelope {block_id, blocks: [], markdown, markdown_truncated}
        in Markdown mode, else a summary line plus the raw children JSON.
    """
    target, err = _resolve_or_error(block_id, "block")
    if err:
        return err

    use_markdown = markdown if markdown is not None else get_markdown_default_for_read()

    if use_markdown:
        try:
            envelope = await retrieve_markdown_envelope(target)
        except Exception as e:
            return _notion_error(e, ref=target)
        return json.dumps(envelope, indent=2, ensure_ascii=False)

    try:
        response = await list_block_children_async(target, start_cursor=start_cursor, page_size=page_size)
    except Exception as e:
        return _notion_error(e, ref=target)

    results = response.get("results", [])
    has_more = "Yes" if response.get("has_more") else "No"
    if response.get("has_more") and response.get("next_cursor"):
        has_more += f", Next cursor: {response['next_cursor']}"

    return "\n".join([
        f"Successfully retrieved {len(results)} children of block {target}",
        f"Has more: {has_more}",
        json.dumps(results, indent=2, ensure_ascii=False),
    ])


@mcp.tool()
async def notion_search(
    query: str = "",
    markdown: Optional[bool] = None,
    page_size: int = 10,
    start_cursor: Optional[str] = None,
    sort: Optional[dict] = None
) -> str:
    """Search Notion pages by title.

    Args:
        query: Search query (matched against titles).
        markdown: Include each page's content as Markdown (default from
            NOTION_MCP_MARKDOWN_DEFAULT_FOR_READ).
        page_size: Maximum results (default 10, max 100).
        start_cursor: Cursor from a previous search.
        sort: {"direction": "ascending"|"descending", "timestamp":
            "last_edited_time"} (default: most recently edited first).

    Returns:
        Compact result lines (id, type, title), or JSON with Markdown
        content per page in Markdown mode.
    """
    if sort is not None:
        sort_error = _check_search_sort(sort)
        if sort_error:
            return sort_error

    use_markdown = markdown if markdown is not None else get_markdown_default_for_read()

    if use_markdown:
        try:
            payload = await search_with_markdown(query, page_size=page_size, start_cursor=start_cursor, sort=sort)
        except Exception as e:
            return _notion_error(e)
        return json.dumps(payload, indent=2, ensure_ascii=False)

    try:
        result = await search_async(query, page_size=page_size, start_cursor=start_cursor, sort=sort)
    except Exception as e:
        return _notion_error(e)

    lines = []
    for item in result.get("results", []):
        obj_type = item.get("object", "unknown")
        obj_id = item.get("id", "")

        icon = item.get("icon") or {}
        icon_str = icon.get("emoji", "") + " " if icon.get("type") == "emoji" else ""

        if obj_type == "page":
            lines.append(f"{obj_id} page  {icon_str}{get_page_title(item)}")
        else:
            title = _plain_text(item.get("title", [])) or "Untitled"
            lines.append(f"{obj_id} {obj_type}  {icon_str}{title}")

    if not lines:
        return f"No results for '{query}'"

    header = f"Found {len(lines)} result(s) for '{query}':"
    if result.get("has_more") and result.get("next_cursor"):
        lines.append(f"More results available (next cursor: {result['next_cursor']})")
    return header + "\n" + "\n".join(lines)


@mcp.tool()
def notion_check_auth() -> str:
    """Verify Notion authentication and return workspace info."""
    try:
        result = _notion_request("GET", "/users/me")
    except Exception as e:
        return _notion_error(e)

    bot_name = result.get("name", "Unknown")
    bot_type = result.get("type", "unknown")
    workspace_name = result.get("bot", {}).get("workspace_name", "Unknown workspace")

    return (
        f"authenticated as '{bot_name}' ({bot_type}) "
        f"in workspace '{workspace_name}'"
    )


# =============================================================================
# HTTP Endpoints (/health)
# =============================================================================

async def health_endpoint(request: Request) -> JSONResponse:
    """Health check for HTTP mode."""
    return JSONResponse({
        "status": "ok",
        "server": SERVER_NAME,
        "version": SERVER_VERSION,
        "mode": "http",
        "token_loaded": _notion_token is not None,
    })


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    """Run the Notion Markdown MCP server.

    Supports two transport modes:
    - stdio (default): launched directly by an MCP client
    - http: streamable HTTP at http://<host>:<port>/mcp plus /health

    Usage:
        notion-markdown-mcp --token-file ~/.notion_token
        notion-markdown-mcp --token-file ~/.notion_token --http --port 3000
    """
    import argparse

    parser = argparse.ArgumentParser(description="Notion Markdown MCP Server")
    parser.add_argument(
        "--token-file",
        help="Path to file containing Notion API token (default: NOTION_TOKEN env var)"
    )
    parser.add_argument(
        "--http",
        action="store_true",
        default=get_transport_mode() == "http",
        help="Run as streamable HTTP server instead of stdio (or MCP_TRANSPORT_MODE=http)"
    )
    parser.add_argument("--host", default="127.0.0.1", help="HTTP bind address")
    parser.add_argument(
        "--port",
        type=int,
        default=_env_int("MCP_HTTP_PORT", DEFAULT_HTTP_PORT),
        help="HTTP port (default: MCP_HTTP_PORT or 3000)"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    global _notion_token
    _notion_token = _load_token(args.token_file)

    if args.http:
        import uvicorn

        app = mcp.streamable_http_app()
        app.add_route("/health", health_endpoint, methods=["GET"])

        logger.info(f"{SERVER_NAME} v{SERVER_VERSION} running on http://{args.host}:{args.port}/mcp")
        uvicorn.run(app, host=args.host, port=args.port, log_level="warning")
    else:
        logger.info(f"{SERVER_NAME} v{SERVER_VERSION} running on stdio")
        mcp.run()


if __name__ == "__main__":
    main()

"""
Formatting and bin-packing of fetched content into analysis batches.

Each account becomes one block:

    === @account (3 items) ===
    [2025-01-01 12:00] text
    engagement: 10♥ 2↻ 300👁
    tweet_url: https://x.com/account/status/1
    ---
    ...

Blocks are packed largest-first into the first batch with room, so no single
analysis call exceeds max_chars.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Optional

from ..config.settings import settings
from ..harvester.content_client import parse_item_time
from ..harvester.schemas import AccountContent

BATCH_SEPARATOR = "\n\n"
ITEM_SEPARATOR = "\n---\n"
QUOTE_LIMIT = 2000

CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
INTERNAL_LINK = re.compile(r"^https?://(twitter\.com|x\.com|t\.co)/")


@dataclass
class FormattedItem:
    text: str
    url: str


@dataclass
class AnalysisBatch:
    text: str
    item_urls: list[str] = field(default_factory=list)
    accounts: list[str] = field(default_factory=list)


def strip_control_chars(text: str) -> str:
    return CONTROL_CHARS.sub("", text or "")


def item_url(item: dict[str, Any], account: str) -> str:
    item_id = item.get("id") or ""
    if not item_id:
        return ""
    author = (item.get("author") or {}).get("userName") or account or "unknown"
    return f"https://x.com/{author}/status/{item_id}"


def expand_short_links(item: dict[str, Any]) -> tuple[str, list[str]]:
    """Item text with short links replaced, plus the external links it mentions."""
    text = strip_control_chars(item.get("text") or "")
    external = []
    urls = (item.get("entities") or {}).get("urls")
    if isinstance(urls, list):
        for entry in urls:
            if not isinstance(entry, dict):
                continue
            short, expanded = entry.get("url"), entry.get("expanded_url")
            if short and expanded:
                text = text.replace(short, expanded)
                if not INTERNAL_LINK.match(expanded):
                    external.append(expanded)
    return text, external


def format_item(item: dict[str, Any], account: str) -> Optional[FormattedItem]:
    if not item:
        return None

    created = parse_item_time(item.get("createdAt"))
    date = created.strftime("%Y-%m-%d %H:%M") if created else "unknown"
    engagement = f"{item.get('likeCount') or 0}♥ {item.get('retweetCount') or 0}↻ {item.get('viewCount') or 0}👁"
    url = item_url(item, account)
    text, external = expand_short_links(item)

    parts = [f"[{date}] {text}", f"engagement: {engagement}"]
    if url:
        parts.append(f"tweet_url: {url}")
    if external:
        parts.append(f"external_links: {', '.join(external)}")
    if item.get("isReply"):
        parts.append(f"(reply to @{item.get('inReplyToUsername') or 'unknown'})")
    quoted = item.get("quoted_tweet") or {}
    if isinstance(quoted, dict) and quoted.get("text"):
        quoted_text = strip_control_chars(quoted["text"])[:QUOTE_LIMIT]
        quoted_author = (quoted.get("author") or {}).get("userName") or "unknown"
        parts.append(f"--- QUOTED @{quoted_author} ---\n{quoted_text}\n--- END QUOTE ---")

    return FormattedItem(text="\n".join(parts), url=url)


def build_analysis_batches(
    accounts: list[AccountContent],
    prompt_len: int = 0,
    max_chars: Optional[int] = None,
) -> list[AnalysisBatch]:
    """First-fit-decreasing packing of per-account blocks.

    A new batch is opened at size prompt_len + block size. A block larger than
    max_chars on its own still gets a batch to itself.
    """
    max_chars = max_chars or settings.analysis_max_batch_chars
    prompt_len = max(0, prompt_len)

    blocks = []
    for content in accounts:
        if not content.items:
            continue
        formatted = [f for f in (format_item(i, content.account) for i in content.items) if f]
        if not formatted:
            continue
        header = f"=== @{content.account} ({len(content.items)} items) ==="
        text = f"{header}\n" + ITEM_SEPARATOR.join(f.text for f in formatted)
        blocks.append({
            "account": content.account,
            "text": text,
            "size": len(text),
            "urls": [f.url for f in formatted if f.url],
        })

    blocks.sort(key=lambda b: b["size"], reverse=True)

    bins: list[dict] = []
    for block in blocks:
        for bin_ in bins:
            extra = (len(BATCH_SEPARATOR) if bin_["blocks"] else 0) + block["size"]
            if bin_["size"] + extra <= max_chars:
                bin_["blocks"].append(block)
                bin_["size"] += extra
                break
        else:
            bins.append({"blocks": [block], "size": prompt_len + block["size"]})

    batches = []
    for bin_ in bins:
        urls = list(dict.fromkeys(u for b in bin_["blocks"] for u in b["urls"]))
        batches.append(AnalysisBatch(
            text=BATCH_SEPARATOR.join(b["text"] for b in bin_["blocks"]),
            item_urls=urls,
            accounts=[b["account"] for b in bin_["blocks"]],
        ))
    return batches

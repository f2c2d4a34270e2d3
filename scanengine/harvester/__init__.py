from .schemas import AccountContent, FetchOutcome
from .content_client import ContentClient, parse_item_time
from .fetch_cache import ContentFetchCache
from .orchestrator import fetch_accounts, dedupe_items

__all__ = [
    "AccountContent",
    "FetchOutcome",
    "ContentClient",
    "parse_item_time",
    "ContentFetchCache",
    "fetch_accounts",
    "dedupe_items",
]

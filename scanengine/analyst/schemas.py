"""
Pydantic schemas for analysis output.

The analysis provider returns free-form JSON; these schemas validate the
fields the pipeline depends on and keep everything else the model returned.
"""

import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)


class TickerMention(BaseModel):
    model_config = ConfigDict(extra="allow")

    symbol: str
    action: Optional[str] = None


class Signal(BaseModel):
    """One extracted signal. Unknown fields from the provider are preserved."""
    model_config = ConfigDict(extra="allow")

    title: str = ""
    summary: str = ""
    category: Optional[str] = None
    source: Optional[str] = None
    tickers: list[TickerMention] = Field(default_factory=list)
    tweet_url: Optional[str] = None
    links: list[str] = Field(default_factory=list)

    @field_validator("tickers", mode="before")
    @classmethod
    def drop_malformed_tickers(cls, v):
        if not isinstance(v, list):
            return []
        return [t for t in v if isinstance(t, dict) and isinstance(t.get("symbol"), str)]

    @field_validator("links", mode="before")
    @classmethod
    def keep_string_links(cls, v):
        if not isinstance(v, list):
            return []
        return [link for link in v if isinstance(link, str)]

    @field_validator("title", "summary", mode="before")
    @classmethod
    def coerce_text(cls, v):
        return "" if v is None else str(v)


class BatchResult(BaseModel):
    """Outcome of analyzing all batches of one scan."""
    signals: list[dict] = Field(default_factory=list)
    batches_total: int = 0
    batches_failed: int = 0
    batches_skipped: int = 0
    batches_cached: int = 0

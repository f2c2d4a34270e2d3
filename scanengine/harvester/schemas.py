"""Fetched content containers shared by the fetch pipeline and the poller."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class AccountContent(BaseModel):
    """Items fetched for one account. A failed or skipped account has no items."""
    account: str
    items: list[dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None
    skipped: bool = False


class FetchOutcome(BaseModel):
    """Result of fetching a list of accounts within one budget."""
    accounts: list[AccountContent] = Field(default_factory=list)
    failed_accounts: list[str] = Field(default_factory=list)
    skipped_accounts: list[str] = Field(default_factory=list)
    total_items: int = 0

    @classmethod
    def from_accounts(cls, accounts: list[AccountContent]) -> "FetchOutcome":
        return cls(
            accounts=accounts,
            failed_accounts=[a.account for a in accounts if a.error],
            skipped_accounts=[a.account for a in accounts if a.skipped],
            total_items=sum(len(a.items) for a in accounts),
        )

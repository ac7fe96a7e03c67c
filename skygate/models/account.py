"""
Remote account descriptor.

An account is the isolation boundary for all breaker, rate-limit and session
state. An empty id means the single default account.
"""

from pydantic import BaseModel, Field, field_validator

DEFAULT_ACCOUNT_ID = "default"


def normalize_account_id(account_id: str | None) -> str:
    """Map an empty/missing account id to the default account key."""
    if account_id is None:
        return DEFAULT_ACCOUNT_ID
    account_id = str(account_id).strip()
    return account_id or DEFAULT_ACCOUNT_ID


class Account(BaseModel):
    id: str = DEFAULT_ACCOUNT_ID
    handle: str = ""
    app_password: str = Field(default="", repr=False)

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value):
        return normalize_account_id(value)

    @property
    def has_credentials(self) -> bool:
        return bool(self.handle and self.app_password)

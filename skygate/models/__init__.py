from .account import Account, DEFAULT_ACCOUNT_ID, normalize_account_id
from .kv_entry import KeyValueEntry

__all__ = [
    "Account",
    "DEFAULT_ACCOUNT_ID",
    "normalize_account_id",
    "KeyValueEntry",
]

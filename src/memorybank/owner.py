"""Collection owner context.

コレクションの所有者は「この端末（ローカル）」か「認証済みアカウント」の
どちらか一方。どちらのパーティションを読み書きするかはこの値だけで決まる。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union


LOCAL_OWNER_ID = "local"


@dataclass(frozen=True)
class LocalOwner:
    kind: Literal["local"] = "local"

    @property
    def owner_id(self) -> str:
        return LOCAL_OWNER_ID

    @property
    def is_authenticated(self) -> bool:
        return False


@dataclass(frozen=True)
class CloudOwner:
    account_id: str
    kind: Literal["cloud"] = "cloud"

    def __post_init__(self) -> None:
        if not (self.account_id or "").strip():
            raise ValueError("cloud owner requires an account id")

    @property
    def owner_id(self) -> str:
        return self.account_id

    @property
    def is_authenticated(self) -> bool:
        return True


Owner = Union[LocalOwner, CloudOwner]

LOCAL_OWNER = LocalOwner()


def owner_for_account(account_id: str | None) -> Owner:
    """Map an authenticated account id (or None for guests) to an owner."""

    if account_id:
        return CloudOwner(account_id=account_id)
    return LOCAL_OWNER

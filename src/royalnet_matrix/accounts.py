"""Links between Matrix users and RYG accounts."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from .logging import get_logger
from .state_store import JsonStateStore

logger = get_logger(__name__)

STATE_VERSION = 1
STATE_FILENAME = "royalnet_accounts.json"


@dataclass
class _AccountsState:
    version: int
    accounts: dict[str, str] = field(default_factory=dict)


def resolve_accounts_path(state_dir: Path) -> Path:
    return state_dir / STATE_FILENAME


def _normalize_text(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _new_state() -> _AccountsState:
    return _AccountsState(version=STATE_VERSION, accounts={})


class AccountStore(JsonStateStore[_AccountsState]):
    """Map of Matrix user ids to RYG account names."""

    def __init__(self, path: Path) -> None:
        super().__init__(
            path,
            version=STATE_VERSION,
            state_type=_AccountsState,
            state_factory=_new_state,
            log_prefix="royalnet.accounts",
        )

    async def get_account(self, user_id: str) -> str | None:
        async with self._lock:
            self._reload_locked_if_needed()
            account = self._state.accounts.get(user_id)
            return _normalize_text(account) if isinstance(account, str) else None

    async def link_account(self, user_id: str, account: str) -> None:
        normalized = _normalize_text(account)
        if normalized is None:
            raise ValueError("account name must not be empty")
        async with self._lock:
            self._reload_locked_if_needed()
            self._state.accounts[user_id] = normalized
            self._save_locked()
        logger.info("royalnet.accounts.linked", user_id=user_id, account=normalized)

    async def unlink_account(self, user_id: str) -> bool:
        async with self._lock:
            self._reload_locked_if_needed()
            if self._state.accounts.pop(user_id, None) is None:
                return False
            self._save_locked()
        logger.info("royalnet.accounts.unlinked", user_id=user_id)
        return True

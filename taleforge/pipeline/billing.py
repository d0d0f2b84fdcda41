"""
Credit authorization and charging for generated segments.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


class CreditLedger(Protocol):
    def authorize(self, user_id: str, story_id: str, estimated_cost: int) -> bool:
        ...

    def charge(self, user_id: str, story_id: str, actual_cost: int) -> None:
        ...


class UnlimitedCredits:
    """Ledger that approves every request and records nothing."""

    def authorize(self, user_id: str, story_id: str, estimated_cost: int) -> bool:
        return True

    def charge(self, user_id: str, story_id: str, actual_cost: int) -> None:
        return None


@dataclass(frozen=True)
class CreditCharge:
    user_id: str
    story_id: str
    amount: int


class InMemoryCreditLedger:
    """
    Per-user credit balances kept in memory.

    ``authorize`` only checks the balance; credits are deducted by ``charge``
    once a segment has been stored.
    """

    def __init__(self, balances: dict[str, int] | None = None) -> None:
        self._balances: dict[str, int] = dict(balances or {})
        self._charges: list[CreditCharge] = []
        self._lock = threading.Lock()

    def balance(self, user_id: str) -> int:
        with self._lock:
            return self._balances.get(user_id, 0)

    def grant(self, user_id: str, amount: int) -> None:
        with self._lock:
            self._balances[user_id] = self._balances.get(user_id, 0) + amount

    @property
    def charges(self) -> tuple[CreditCharge, ...]:
        with self._lock:
            return tuple(self._charges)

    def authorize(self, user_id: str, story_id: str, estimated_cost: int) -> bool:
        with self._lock:
            allowed = self._balances.get(user_id, 0) >= estimated_cost
        if not allowed:
            logger.info(
                "Refusing %d credit(s) for user %s on story %s.", estimated_cost, user_id, story_id
            )
        return allowed

    def charge(self, user_id: str, story_id: str, actual_cost: int) -> None:
        with self._lock:
            balance = self._balances.get(user_id, 0)
            if balance < actual_cost:
                raise ValueError(
                    f"User {user_id} has {balance} credit(s); cannot charge {actual_cost}."
                )
            self._balances[user_id] = balance - actual_cost
            self._charges.append(CreditCharge(user_id=user_id, story_id=story_id, amount=actual_cost))

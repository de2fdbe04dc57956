import logging
from dataclasses import dataclass
from typing import List, Optional

import config

logger = logging.getLogger(__name__)

UNCLIMBED = -1


@dataclass(frozen=True)
class BankEvent:
    amount: int
    auto: bool  # True when the top rung banked itself


class BankingLadder:
    """Escalating reward chain shared by the whole table.

    `chain_index` is -1 while unclimbed; otherwise `current_value` is
    `chain[chain_index]`. Reaching past the top rung banks it and drops back
    to the bottom in the same step, so the ladder never sits "completed".
    """

    def __init__(self, chain: Optional[List[int]] = None):
        self.chain = list(chain or config.CHAIN_VALUES)
        self.chain_index = UNCLIMBED
        self.current_value = 0
        self.round_total = 0
        self.total = 0

    def _heal(self):
        idx = self.chain_index
        if isinstance(idx, bool) or not isinstance(idx, int) or not (UNCLIMBED <= idx < len(self.chain)):
            logger.warning("Ladder index %r out of range, resetting", idx)
            self._drop()
        elif idx == UNCLIMBED:
            self.current_value = 0
        else:
            self.current_value = self.chain[idx]

    def _drop(self):
        self.chain_index = UNCLIMBED
        self.current_value = 0

    def _credit(self, amount: int):
        self.total += amount
        self.round_total += amount
        self._drop()

    def on_correct(self) -> Optional[BankEvent]:
        self._heal()
        top = len(self.chain) - 1
        if self.chain_index == top:
            amount = self.chain[top]
            self._credit(amount)
            return BankEvent(amount, auto=True)
        self.chain_index += 1
        self.current_value = self.chain[self.chain_index]
        return None

    def on_wrong(self):
        self._drop()

    def on_manual_bank(self) -> Optional[BankEvent]:
        self._heal()
        if self.current_value <= 0:
            return None
        amount = self.current_value
        self._credit(amount)
        return BankEvent(amount, auto=False)

    def clear_chain(self):
        """Forfeit unbanked value (round and voting transitions)."""
        self._drop()

    def start_round(self):
        self._drop()
        self.round_total = 0

    def snapshot(self) -> dict:
        self._heal()
        return {
            "chain": list(self.chain),
            "chain_index": self.chain_index,
            "current_value": self.current_value,
            "banked_total": self.total,
            "banked_round": self.round_total,
        }

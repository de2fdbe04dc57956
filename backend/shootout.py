import logging
from dataclasses import dataclass, field
from typing import List, Optional

import config

logger = logging.getLogger(__name__)


@dataclass
class PenaltyContestant:
    name: str
    history: List[bool] = field(default_factory=list)

    @property
    def score(self) -> int:
        return sum(1 for shot in self.history if shot)

    @property
    def shots(self) -> int:
        return len(self.history)

    def to_dict(self) -> dict:
        return {"name": self.name, "history": list(self.history), "score": self.score}


class FinalDuel:
    """Best-of-five penalty shootout, then paired sudden death."""

    def __init__(self, p1: str, p2: str, regular_shots: int = config.PENALTY_REGULAR_SHOTS):
        self.p1 = PenaltyContestant(p1)
        self.p2 = PenaltyContestant(p2)
        self.regular_shots = regular_shots
        self.turn = 0
        self.winner: Optional[str] = None
        self.sudden_death = False

    @property
    def shooter(self) -> PenaltyContestant:
        return self.p1 if self.turn == 0 else self.p2

    @property
    def state(self) -> str:
        if self.winner:
            return "resolved"
        return "sudden_death" if self.sudden_death else "regular"

    def record(self, made: bool) -> bool:
        """Append a judged shot. Returns False once the duel is decided."""
        if self.winner:
            logger.info("Shot ignored, duel already won by %s", self.winner)
            return False
        self.shooter.history.append(made)
        self._check_winner()
        if not self.winner:
            self.turn = 1 - self.turn
        return True

    def _check_winner(self):
        a, b = self.p1, self.p2
        if not self.sudden_death:
            if a.score > b.score + (self.regular_shots - b.shots):
                self.winner = a.name
            elif b.score > a.score + (self.regular_shots - a.shots):
                self.winner = b.name
            elif a.shots == b.shots == self.regular_shots and a.score == b.score:
                self.sudden_death = True
                logger.info("Shootout level at %d, sudden death", a.score)
            return
        # Sudden death is only decided on paired shots
        if a.shots == b.shots and a.score != b.score:
            self.winner = a.name if a.score > b.score else b.name

    def to_dict(self) -> dict:
        return {
            "active": self.winner is None,
            "p1": self.p1.to_dict(),
            "p2": self.p2.to_dict(),
            "turn": self.turn,
            "shooter": self.shooter.name,
            "winner": self.winner,
            "sudden_death": self.sudden_death,
            "state": self.state,
        }

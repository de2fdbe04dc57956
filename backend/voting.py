import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VotingResult:
    kind: str  # "clear" | "tie"
    targets: List[str]
    count: int
    decision_maker: Optional[str] = None

    def to_dict(self) -> dict:
        if self.kind == "clear":
            return {"type": "clear", "target": self.targets[0], "count": self.count}
        return {
            "type": "tie",
            "targets": list(self.targets),
            "count": self.count,
            "decision_maker": self.decision_maker,
        }


def strongest_player(roster: List[str], correct_counts: Dict[str, int]) -> Optional[str]:
    """Most correct answers; the earliest roster entry wins ties."""
    best = None
    for name in roster:
        if best is None or correct_counts.get(name, 0) > correct_counts.get(best, 0):
            best = name
    return best


@dataclass
class VotingBox:
    votes: Dict[str, str] = field(default_factory=dict)  # voter -> target, arrival order
    result: Optional[VotingResult] = None

    def reset(self):
        self.votes = {}
        self.result = None

    def cast(self, voter: str, target: str, roster: List[str]) -> bool:
        if voter not in roster:
            logger.info("Vote from inactive player '%s' refused", voter)
            return False
        if voter in self.votes:
            logger.info("'%s' already voted this cycle", voter)
            return False
        if target not in roster:
            logger.info("Vote for unknown target '%s' refused", target)
            return False
        self.votes[voter] = target
        return True

    def tally(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for target in self.votes.values():
            counts[target] = counts.get(target, 0) + 1
        return counts

    def details(self) -> List[dict]:
        return [{"voter": voter, "target": target} for voter, target in self.votes.items()]

    def is_complete(self, roster: List[str]) -> bool:
        return bool(roster) and len(self.votes) >= len(roster)

    def resolve(self, roster: List[str], correct_counts: Dict[str, int]) -> Optional[VotingResult]:
        """Pure read of the accumulated votes; None until everyone has voted."""
        if not self.is_complete(roster):
            return None
        counts = self.tally()
        top = max(counts.values())
        # Roster order keeps the outcome independent of arrival order
        leaders = [name for name in roster if counts.get(name) == top]
        if len(leaders) == 1:
            return VotingResult("clear", leaders, top)
        return VotingResult("tie", leaders, top, strongest_player(roster, correct_counts))

from typing import Dict, Iterable, List

NO_ACTOR = "No one"


class TurnTracker:
    """Rotating turn order over the active players."""

    def __init__(self, order: Iterable[str] = ()):
        self.order: List[str] = list(order)
        self.index = 0

    def current(self) -> str:
        if not self.order:
            return NO_ACTOR
        return self.order[self.index % len(self.order)]

    def advance(self):
        if not self.order:
            return
        self.index = (self.index + 1) % len(self.order)

    def add(self, name: str):
        if name not in self.order:
            self.order.append(name)

    def remove(self, name: str):
        self.order = [p for p in self.order if p != name]
        # Whose turn it was is not preserved
        if self.index >= len(self.order):
            self.index = 0

    def rederive(self, correct_counts: Dict[str, int]):
        """Strongest survivor leads (most correct answers), ties alphabetical."""
        self.order = sorted(self.order, key=lambda name: (-correct_counts.get(name, 0), name))
        self.index = 0

    def __len__(self):
        return len(self.order)

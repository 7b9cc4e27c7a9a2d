"""Per-item bookkeeping shared by the scheduled sweeps."""
from dataclasses import dataclass, field, asdict
from typing import Optional


@dataclass
class SweepItem:
    id: int
    outcome: str
    error: Optional[str] = None
    guardians_notified: Optional[int] = None


@dataclass
class SweepReport:
    items: list[SweepItem] = field(default_factory=list)

    def count(self, outcome: str) -> int:
        return sum(1 for i in self.items if i.outcome == outcome)

    def summary(self, *outcomes: str) -> dict:
        out = {"checked": len(self.items)}
        for name in outcomes + ("failed",):
            out[name] = self.count(name)
        out["items"] = [asdict(i) for i in self.items]
        return out

"""
Typed result contracts for pipeline stages.

Each stage returns one of these instead of raising, so callers always get a
defined outcome and can inspect `error` when a stage degraded.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class GoalAdjustment:
    """Outcome of capping a proposed donation against the wallet's season goal."""

    final_amount: int
    goal_reached_now: bool = False
    season_id: int | None = None
    proposed_amount: int = 0
    total_donated: int | None = None
    goal_amount: int | None = None
    error: str | None = None

    @classmethod
    def unchanged(cls, proposed: int, error: str | None = None) -> "GoalAdjustment":
        return cls(final_amount=proposed, proposed_amount=proposed, error=error)

    @property
    def capped(self) -> bool:
        return self.final_amount != self.proposed_amount


@dataclass
class GroupOutcome:
    """Result of settling one contract group."""

    contract: str
    settled: list[str] = field(default_factory=list)
    unsettled: list[str] = field(default_factory=list)
    settlement_tx_hash: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.settled)


@dataclass
class DrainReport:
    """Summary of one SettlementQueue drain (possibly several coalesced passes)."""

    passes: int = 0
    intents: int = 0
    groups: list[GroupOutcome] = field(default_factory=list)
    coalesced: bool = False

    @property
    def settled(self) -> list[str]:
        return [h for g in self.groups for h in g.settled]

    @property
    def unsettled(self) -> list[str]:
        return [h for g in self.groups for h in g.unsettled]

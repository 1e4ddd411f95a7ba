"""Challenge streak bookkeeping applied once per completed challenge."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date

# A gap of more than this many days since the last challenge breaks the streak.
STREAK_GAP_DAYS = 1


@dataclass
class ChallengeStats:
    user_id: int
    current_streak: int = 0
    highest_streak: int = 0
    total_wins: int = 0
    total_challenges: int = 0
    last_challenge_date: str = ""

    @classmethod
    def from_row(cls, row) -> ChallengeStats:
        return cls(
            user_id=row["user_id"],
            current_streak=row["current_streak"],
            highest_streak=row["highest_streak"],
            total_wins=row["total_wins"],
            total_challenges=row["total_challenges"],
            last_challenge_date=row["last_challenge_date"] or "",
        )

    def to_dict(self) -> dict:
        return asdict(self)


def days_since(last_date: str, today: date) -> int | None:
    if not last_date:
        return None
    return (today - date.fromisoformat(last_date[:10])).days


def apply_result(stats: ChallengeStats, is_winner: bool, today: date | None = None) -> ChallengeStats:
    """Return updated stats for one participant of a completed challenge.

    The streak is reset when the player skipped more than a day, for winners
    and losers alike; a loss or draw never decrements it otherwise.
    """
    today = today or date.today()
    current = stats.current_streak
    gap = days_since(stats.last_challenge_date, today)
    if gap is not None and gap > STREAK_GAP_DAYS:
        current = 0

    wins = stats.total_wins
    highest = stats.highest_streak
    if is_winner:
        current += 1
        wins += 1
        highest = max(highest, current)

    return ChallengeStats(
        user_id=stats.user_id,
        current_streak=current,
        highest_streak=highest,
        total_wins=wins,
        total_challenges=stats.total_challenges + 1,
        last_challenge_date=today.isoformat(),
    )


def decide_outcome(host_id: int, opponent_id: int, host_score: int, opponent_score: int) -> tuple[int | None, bool]:
    """Return (winner_id, is_draw) for a pair of final scores."""
    if host_score > opponent_score:
        return host_id, False
    if opponent_score > host_score:
        return opponent_id, False
    return None, True

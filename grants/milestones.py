from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Milestone:
    threshold: int
    bonus: int


MILESTONES: tuple[Milestone, ...] = (
    Milestone(threshold=10, bonus=5),
    Milestone(threshold=25, bonus=10),
    Milestone(threshold=50, bonus=15),
    Milestone(threshold=75, bonus=20),
    Milestone(threshold=100, bonus=30),
)

# Past the table, every further hundred generations pays this bonus.
RECURRING_STEP = 100
RECURRING_BONUS = 30


def milestone_for(generation_count: int) -> Optional[Milestone]:
    """Highest milestone reached at ``generation_count``, or None."""
    if generation_count < MILESTONES[0].threshold:
        return None
    last = MILESTONES[-1]
    if generation_count >= last.threshold + RECURRING_STEP:
        threshold = generation_count - generation_count % RECURRING_STEP
        return Milestone(threshold=threshold, bonus=RECURRING_BONUS)
    reached = [m for m in MILESTONES if m.threshold <= generation_count]
    return reached[-1]


def exact_milestone_bonus(generation_count: int) -> Optional[int]:
    """Bonus when ``generation_count`` lands exactly on a threshold."""
    milestone = milestone_for(generation_count)
    if milestone and milestone.threshold == generation_count:
        return milestone.bonus
    return None

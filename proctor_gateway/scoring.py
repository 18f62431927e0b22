"""Per-unit correctness rollups and the instructional-need flag.

Pure functions over the ordered response log. Nothing here writes back to
the record store.

Instructional-need thresholds (by unit size):
- size <= 5: flag at 2 or more incorrect
- 5 < size <= 10: flag at 3 or more incorrect
- size > 10: flag when the incorrect fraction is at least 0.30

Unit size is the unit's declared item count when known, otherwise the number
of recorded responses. A unit with no responses is skipped and never flagged.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

SCORE_CODES = ("correct", "self_correct", "incorrect", "no_response")
CORRECT_CODES = frozenset({"correct", "self_correct"})


@dataclass(frozen=True)
class UnitRollup:
    unit_id: str
    unit_name: Optional[str]
    item_count: int
    total_responses: int
    correct_count: int
    incorrect_count: int
    percent_correct: int
    needs_instruction: bool
    skipped: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unitId": self.unit_id,
            "unitName": self.unit_name,
            "itemCount": self.item_count,
            "totalResponses": self.total_responses,
            "correctCount": self.correct_count,
            "errorCount": self.incorrect_count,
            "percentCorrect": self.percent_correct,
            "needsInstruction": self.needs_instruction,
            "skipped": self.skipped,
        }


def needs_instruction(item_count: int, incorrect_count: int) -> bool:
    if item_count <= 0:
        return False
    if item_count <= 5:
        return incorrect_count >= 2
    if item_count <= 10:
        return incorrect_count >= 3
    return incorrect_count / item_count >= 0.30


def _percent(part: int, whole: int) -> int:
    # Half-up rounding on integers.
    if whole <= 0:
        return 0
    return (200 * part + whole) // (2 * whole)


def score_unit(
    unit_id: str,
    score_codes: Sequence[str],
    item_count: Optional[int] = None,
    unit_name: Optional[str] = None,
) -> UnitRollup:
    """Roll up one unit. Anything not counted as correct is incorrect."""
    total = len(score_codes)
    correct = sum(1 for code in score_codes if code in CORRECT_CODES)
    incorrect = total - correct
    size = int(item_count) if item_count else total

    if total == 0:
        return UnitRollup(unit_id, unit_name, size, 0, 0, 0, 0, needs_instruction=False, skipped=True)

    return UnitRollup(
        unit_id=unit_id,
        unit_name=unit_name,
        item_count=size,
        total_responses=total,
        correct_count=correct,
        incorrect_count=incorrect,
        percent_correct=_percent(correct, total),
        needs_instruction=needs_instruction(size, incorrect),
        skipped=False,
    )


def summarize_session(
    responses: Iterable[Mapping[str, Any]],
    units: Optional[Mapping[str, Mapping[str, Any]]] = None,
    selected_unit_ids: Iterable[str] = (),
) -> List[UnitRollup]:
    """Group a session's responses by unit and roll each group up.

    `units` maps unit id to its row (for name and item_count). Units listed
    in `selected_unit_ids` with no responses appear as skipped.
    """
    units = units or {}
    by_unit: Dict[str, List[str]] = {}
    for unit_id in selected_unit_ids:
        by_unit.setdefault(str(unit_id), [])
    for r in responses:
        by_unit.setdefault(str(r["unit_id"]), []).append(str(r["score_code"]))

    rollups = []
    for unit_id, codes in by_unit.items():
        unit = units.get(unit_id) or {}
        rollups.append(score_unit(unit_id, codes, item_count=unit.get("item_count"), unit_name=unit.get("name")))
    rollups.sort(key=lambda u: ((u.unit_name or "").lower(), u.unit_id))
    return rollups

"""
StoreAudit — Scoring Engine

Per-answer earned points, section scores and the overall audit score.

  answer   : earned/max by answer kind (exempt → 0 / 0, max restored when leaving exempt)
  section  : 100 × Σearned / Σmax over answered, non-exempt answers
  overall  : round(mean of qualifying section scores)

The overall score is an unweighted mean across sections: a section with two
questions weighs the same as one with twenty. Sections with nothing to score
are left out of the mean; an audit where nothing qualifies scores 0.

recompute_scores() only ever writes earnedPoints, maxPoints and totalScore.
"""

import math

from storeaudit.config import ANSWER_YES, ANSWER_EXEMPT, DEFAULT_RATING_MAX
from storeaudit.records import (
    answer_kind, is_answered, is_exempt, get_answer, now_iso,
)


def round_half_up(value: float) -> int:
    """2.5 → 3. Python's round() would give 2."""
    return int(math.floor(value + 0.5))


def _n(val, default=0.0) -> float:
    if val is None or val == "":
        return float(default)
    try:
        return float(val)
    except (ValueError, TypeError):
        return float(default)


def _num(value: float):
    """Keep whole numbers as ints in stored records."""
    return int(value) if float(value).is_integer() else value


# ============================================================
# PER-ANSWER SCORING
# ============================================================
def _score_yes_no(answer, max_points):
    return max_points if answer.get("answer") == ANSWER_YES else 0


def _score_rating(answer, max_points):
    rating_max = _n(answer.get("ratingMax"), DEFAULT_RATING_MAX) or DEFAULT_RATING_MAX
    selected = _n(answer.get("answer"))
    return round_half_up(selected / rating_max * max_points)


def _score_multiple_choice(answer, max_points):
    chosen = answer.get("answer")
    option = next((o for o in answer.get("options") or [] if o.get("id") == chosen), None)
    return _n(option.get("points")) if option else 0


def _score_checkbox(answer, max_points):
    selected = set(answer.get("selectedOptions") or [])
    return sum(_n(o.get("points")) for o in answer.get("options") or [] if o.get("id") in selected)


def _score_informational(answer, max_points):
    return 0


_SCORERS = {
    "yes_no": _score_yes_no,
    "rating": _score_rating,
    "multiple_choice": _score_multiple_choice,
    "checkbox": _score_checkbox,
    "number": _score_informational,
    "date": _score_informational,
    "short_text": _score_informational,
}


def score_answer(answer: dict) -> tuple:
    """Return (earned, max) for one answer without mutating it."""
    scorer = _SCORERS[answer_kind(answer)]
    if is_exempt(answer):
        return 0, 0

    original = answer.get("originalMaxPoints")
    max_points = _n(original if original not in (None, 0) else answer.get("maxPoints"))
    if not is_answered(answer):
        return 0, _num(max_points)

    earned = max(0.0, min(_n(scorer(answer, max_points)), max_points))
    return _num(earned), _num(max_points)


# ============================================================
# SECTION / AUDIT AGGREGATION
# ============================================================
def _qualifies(answer: dict) -> bool:
    return is_answered(answer) and not is_exempt(answer)


def section_score(section: dict):
    """Percentage for one section, or None when the section has nothing to score."""
    earned = 0.0
    maximum = 0.0
    for answer in section.get("answers") or []:
        if _qualifies(answer):
            earned += _n(answer.get("earnedPoints"))
            maximum += _n(answer.get("maxPoints"))
    if maximum <= 0:
        return None
    return earned / maximum * 100


def overall_score(sections: list) -> int:
    scores = [s for s in (section_score(sec) for sec in sections) if s is not None]
    if not scores:
        return 0
    return round_half_up(sum(scores) / len(scores))


def recompute_scores(audit: dict) -> dict:
    """Rescore every answer and the audit in place. Returns {sectionId: score|None}."""
    for section in audit.get("sections") or []:
        for answer in section.get("answers") or []:
            earned, max_points = score_answer(answer)
            answer["earnedPoints"] = earned
            answer["maxPoints"] = max_points
    audit["totalScore"] = overall_score(audit.get("sections") or [])
    return {s.get("sectionId"): section_score(s) for s in audit.get("sections") or []}


def set_answer(audit: dict, section_index: int, answer_index: int, value: str,
               selected_options: list = None) -> dict:
    """Record an auditor's answer and rescore. Checkbox answers pass selected_options."""
    answer = get_answer(audit, section_index, answer_index)
    kind = answer_kind(answer)
    if kind == "checkbox" and selected_options is not None:
        answer["selectedOptions"] = list(selected_options)
        value = ",".join(selected_options) if value is None else value
    elif value == ANSWER_EXEMPT:
        answer["selectedOptions"] = []
    answer["answer"] = value or ""
    recompute_scores(audit)
    audit["updatedAt"] = now_iso()
    return audit

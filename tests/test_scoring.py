import copy

import pytest

from conftest import make_answer, make_audit
from storeaudit.records import RecordError
from storeaudit.scoring import (
    overall_score, recompute_scores, round_half_up, score_answer, section_score, set_answer,
)


def test_yes_no_scores_full_or_nothing():
    assert score_answer(make_answer("q", answer="yes")) == (10, 10)
    assert score_answer(make_answer("q", answer="no")) == (0, 10)


def test_unanswered_keeps_max_and_earns_nothing():
    assert score_answer(make_answer("q", answer="")) == (0, 10)


def test_exempt_zeroes_both_sides():
    assert score_answer(make_answer("q", answer="exempt")) == (0, 0)


def test_leaving_exempt_restores_original_max():
    answer = make_answer("q", answer="exempt", max_points=0, originalMaxPoints=10)
    assert score_answer(answer) == (0, 0)
    answer["answer"] = "yes"
    assert score_answer(answer) == (10, 10)


def test_rating_is_proportional_and_rounds_half_up():
    assert score_answer(make_answer("q", "rating", answer="3", ratingMax=5)) == (6, 10)
    # 1/4 of 10 is 2.5
    assert score_answer(make_answer("q", "rating", answer="1", ratingMax=4)) == (3, 10)


def test_multiple_choice_uses_chosen_option_points():
    options = [{"id": "a", "text": "Good", "points": 5}, {"id": "b", "text": "Fair", "points": 2}]
    assert score_answer(make_answer("q", "multiple_choice", answer="b", max_points=5, options=options)) == (2, 5)


def test_checkbox_sums_selected_options_and_clamps_to_max():
    options = [{"id": "a", "points": 4}, {"id": "b", "points": 4}, {"id": "c", "points": 4}]
    partial = make_answer("q", "checkbox", answer="a", max_points=10, options=options, selectedOptions=["a"])
    assert score_answer(partial) == (4, 10)
    everything = make_answer("q", "checkbox", answer="a,b,c", max_points=10, options=options,
                             selectedOptions=["a", "b", "c"])
    assert score_answer(everything) == (10, 10)


@pytest.mark.parametrize("kind,value", [("number", "12"), ("date", "2026-10-01"), ("short_text", "ok")])
def test_informational_kinds_never_earn(kind, value):
    earned, _ = score_answer(make_answer("q", kind, answer=value, max_points=0))
    assert earned == 0


def test_unknown_kind_is_an_error():
    with pytest.raises(RecordError):
        score_answer(make_answer("q", "slider", answer="3"))


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(2.4999) == 2
    assert round_half_up(49.5) == 50


def test_overall_is_unweighted_section_mean():
    audit = make_audit(sections=[
        ("S1", [make_answer("a", answer="yes", max_points=1), make_answer("b", answer="yes", max_points=1)]),
        ("S2", [make_answer("c", answer="no", max_points=1)]),
    ])
    scores = recompute_scores(audit)
    assert scores == {"sec-0": 100.0, "sec-1": 0.0}
    assert audit["totalScore"] == 50


def test_sections_without_qualifying_answers_are_left_out():
    audit = make_audit(sections=[
        ("S1", [make_answer("a", answer="yes")]),
        ("S2", [make_answer("b", answer="exempt"), make_answer("c", answer="")]),
    ])
    recompute_scores(audit)
    assert section_score(audit["sections"][1]) is None
    assert audit["totalScore"] == 100


def test_all_exempt_audit_scores_zero():
    audit = make_audit(sections=[("S1", [make_answer("a", answer="exempt"), make_answer("b", answer="exempt")])])
    recompute_scores(audit)
    assert audit["totalScore"] == 0
    assert overall_score([]) == 0


def test_recompute_is_idempotent_and_touches_only_score_fields():
    audit = make_audit()
    recompute_scores(audit)
    first = copy.deepcopy(audit)
    recompute_scores(audit)
    assert audit == first

    before = make_audit()
    after = copy.deepcopy(before)
    recompute_scores(after)
    for s_before, s_after in zip(before["sections"], after["sections"]):
        for a_before, a_after in zip(s_before["answers"], s_after["answers"]):
            changed = {k for k in a_after if a_after[k] != a_before.get(k)}
            assert changed <= {"earnedPoints", "maxPoints"}


def test_earned_never_exceeds_max():
    options = [{"id": "a", "points": 50}]
    audit = make_audit(sections=[("S", [
        make_answer("a", answer="yes"),
        make_answer("b", answer="exempt"),
        make_answer("c", "rating", answer="9", ratingMax=5),
        make_answer("d", "checkbox", answer="a", options=options, selectedOptions=["a"]),
    ])])
    recompute_scores(audit)
    for answer in audit["sections"][0]["answers"]:
        assert answer["earnedPoints"] <= answer["maxPoints"]
        if answer["answer"] == "exempt":
            assert answer["earnedPoints"] == answer["maxPoints"] == 0


def test_set_answer_rescores_the_audit():
    audit = make_audit()
    recompute_scores(audit)
    assert audit["totalScore"] == 25  # Cleanliness 50, Safety 0
    set_answer(audit, 1, 0, "yes")
    assert audit["sections"][1]["answers"][0]["earnedPoints"] == 5
    assert audit["totalScore"] == 75


def test_set_answer_records_checkbox_selection():
    options = [{"id": "a", "points": 3}, {"id": "b", "points": 2}]
    audit = make_audit(sections=[("S", [make_answer("q", "checkbox", max_points=5, options=options)])])
    set_answer(audit, 0, 0, None, selected_options=["a", "b"])
    answer = audit["sections"][0]["answers"][0]
    assert answer["answer"] == "a,b"
    assert answer["earnedPoints"] == 5

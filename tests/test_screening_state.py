import pytest

from backend.core.screening_state import (
    Actor,
    InvalidTransitionError,
    Record,
    ScreeningStatus,
    Stage,
    StatusUpdate,
    apply_update,
    batch_candidates,
    can_transition,
    included_records,
    plan_reset,
    stage_candidates,
    stage_statistics,
)

P, IP, INC, EXC, MAY = (
    ScreeningStatus.PENDING,
    ScreeningStatus.IN_PROGRESS,
    ScreeningStatus.INCLUDED,
    ScreeningStatus.EXCLUDED,
    ScreeningStatus.MAYBE,
)


def _records():
    return [
        Record(id="a", title="A"),
        Record(id="b", title="B", dedup_status=EXC, is_duplicate=True),
        Record(id="c", title="C", title_status=INC),
        Record(id="d", title="D", title_status=MAY),
        Record(id="e", title="E", title_status=INC, abstract_status=INC),
        Record(id="f", title="F", title_status=EXC),
    ]


def test_title_stage_excludes_removed_duplicates() -> None:
    ids = [r.id for r in stage_candidates(_records(), Stage.TITLE)]
    assert ids == ["a", "c", "d", "e", "f"]


def test_abstract_stage_is_exactly_title_included() -> None:
    ids = [r.id for r in stage_candidates(_records(), Stage.ABSTRACT)]
    assert ids == ["c", "e"]


def test_dedup_stage_lists_group_members() -> None:
    ids = [r.id for r in stage_candidates(_records(), Stage.DEDUPLICATION)]
    assert ids == ["b"]


def test_batch_candidates_skip_decided_records() -> None:
    title_ids = [r.id for r in batch_candidates(_records(), Stage.TITLE)]
    abstract_ids = [r.id for r in batch_candidates(_records(), Stage.ABSTRACT)]

    assert title_ids == ["a", "d"]
    assert abstract_ids == ["c"]


def test_batch_candidates_include_in_progress() -> None:
    records = [Record(id="x", title_status=IP)]
    assert [r.id for r in batch_candidates(records, Stage.TITLE)] == ["x"]


def test_batch_candidates_reject_dedup_stage() -> None:
    with pytest.raises(ValueError):
        batch_candidates(_records(), Stage.DEDUPLICATION)


def test_included_records_require_both_stages() -> None:
    assert [r.id for r in included_records(_records())] == ["e"]


@pytest.mark.parametrize("current", [P, IP, MAY])
@pytest.mark.parametrize("target", [INC, EXC, MAY])
def test_classifier_may_decide_undecided_records(current, target) -> None:
    assert can_transition(current, target, Actor.CLASSIFIER)


@pytest.mark.parametrize("current", [INC, EXC])
def test_classifier_never_overrides_decisions(current) -> None:
    assert not can_transition(current, MAY, Actor.CLASSIFIER)
    assert not can_transition(current, INC, Actor.CLASSIFIER)


def test_classifier_cannot_set_pending() -> None:
    assert not can_transition(MAY, P, Actor.CLASSIFIER)


def test_manual_may_revise_any_decision() -> None:
    assert can_transition(INC, EXC, Actor.MANUAL)
    assert can_transition(EXC, MAY, Actor.MANUAL)
    assert not can_transition(INC, P, Actor.MANUAL)


def test_reset_only_targets_pending() -> None:
    assert can_transition(INC, P, Actor.RESET)
    assert not can_transition(P, INC, Actor.RESET)


def test_apply_update_sets_status_and_notes() -> None:
    record = Record(id="a", title_status=P)
    apply_update(record, StatusUpdate("a", Stage.TITLE, INC, notes="relevant", actor=Actor.CLASSIFIER))

    assert record.title_status == INC
    assert record.title_notes == "relevant"


def test_apply_update_keeps_notes_when_none_given() -> None:
    record = Record(id="a", abstract_status=MAY, abstract_notes="earlier")
    apply_update(record, StatusUpdate("a", Stage.ABSTRACT, EXC))

    assert record.abstract_status == EXC
    assert record.abstract_notes == "earlier"


def test_apply_update_rejects_classifier_override() -> None:
    record = Record(id="a", title_status=EXC)

    with pytest.raises(InvalidTransitionError):
        apply_update(record, StatusUpdate("a", Stage.TITLE, INC, actor=Actor.CLASSIFIER))

    assert record.title_status == EXC


def test_plan_reset_touches_only_current_candidates() -> None:
    updates = plan_reset(_records(), Stage.ABSTRACT)

    assert [u.record_id for u in updates] == ["c", "e"]
    assert all(u.status == P and u.actor == Actor.RESET for u in updates)


def test_stage_statistics_counts_candidates() -> None:
    stats = stage_statistics(_records(), Stage.TITLE)

    assert stats["total"] == 5
    assert stats["pending"] == 1
    assert stats["included"] == 2
    assert stats["maybe"] == 1
    assert stats["excluded"] == 1


def test_text_for_abstract_falls_back_to_title() -> None:
    assert Record(id="a", title="T").text_for(Stage.ABSTRACT) == "T"
    assert Record(id="a", title="T", abstract="Abs").text_for(Stage.ABSTRACT) == "Abs"

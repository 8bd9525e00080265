import json
from unittest.mock import MagicMock

from backend.core.decision_parser import Decision
from backend.core.screener import BatchScreener, build_prompt, format_entry_line
from backend.core.screening_state import Record, ScreeningStatus, Stage
from backend.services.credential_rotation import ClassificationClient, RotationState
from backend.services.gemini_client import GeminiAPIError
from backend.db.record_store import UpdateReport
from shared.config import API_KEYS_KEY, ROTATION_STATE_KEY

from tests.conftest import FakeTransport, entry_ids, keyword_decisions


def _screener(store, transport, batch_size=2):
    return BatchScreener(ClassificationClient(transport=transport), store, batch_size=batch_size)


def _seed(store, sample_entries, keys=("key-a",)):
    store.save_entries(sample_entries, "library.bib")
    store.set_setting(API_KEYS_KEY, json.dumps(list(keys)))


def test_format_entry_line_collapses_whitespace() -> None:
    record = Record(id="r1", title="A  title\nacross lines")
    assert format_entry_line(record, Stage.TITLE) == "id: r1; title: A title across lines"


def test_build_prompt_replaces_placeholder_or_appends() -> None:
    records = [Record(id="r1", title="T1"), Record(id="r2", title="T2")]

    assert build_prompt("Judge:\n{entries}\nDone", records, Stage.TITLE) == (
        "Judge:\nid: r1; title: T1\nid: r2; title: T2\nDone"
    )
    assert build_prompt("Judge these", records, Stage.TITLE).endswith(
        "List of entries:\n\nid: r1; title: T1\nid: r2; title: T2"
    )


def test_run_batch_classifies_and_persists(store, sample_entries) -> None:
    _seed(store, sample_entries)
    transport = FakeTransport()
    progress = MagicMock()

    result = _screener(store, transport).run_batch(store.get_all(), Stage.TITLE, progress_callback=progress)

    assert len(transport.calls) == 2
    assert result.succeeded == 4
    assert result.errored == 0
    assert [c.args for c in progress.call_args_list] == [(2, 4), (4, 4)]

    assert store.get("smith2020").title_status == ScreeningStatus.INCLUDED
    assert store.get("doe2021").title_status == ScreeningStatus.EXCLUDED
    assert store.get("lee2019").title_notes == "include by keyword"


def test_zero_candidates_means_no_calls_and_no_updates(store) -> None:
    store_spy = MagicMock(wraps=store)
    transport = FakeTransport()

    result = _screener(store_spy, transport).run_batch([], Stage.TITLE)

    assert transport.calls == []
    store_spy.update_statuses.assert_not_called()
    assert result.total_candidates == 0
    assert result.decisions == []


def test_decided_records_are_not_sent(store, sample_entries) -> None:
    _seed(store, sample_entries)
    store.update_screening("doe2021", Stage.TITLE, ScreeningStatus.EXCLUDED)
    transport = FakeTransport()

    _screener(store, transport, batch_size=10).run_batch(store.get_all(), Stage.TITLE)

    assert entry_ids(transport.calls[0][1]) == ["smith2020", "smith2020b", "lee2019"]


def test_failed_chunk_does_not_stop_later_chunks(store, sample_entries) -> None:
    _seed(store, sample_entries)
    answers = iter([
        GeminiAPIError("Internal error", status_code=500),
        None,
    ])

    def flaky(prompt):
        action = next(answers)
        if action is not None:
            raise action
        return keyword_decisions(prompt)

    transport = FakeTransport(default=flaky)
    result = _screener(store, transport).run_batch(store.get_all(), Stage.TITLE)

    assert len(transport.calls) == 2
    assert result.succeeded == 2
    assert result.errored == 2
    assert len(result.chunk_errors) == 1
    assert store.get("smith2020").title_status == ScreeningStatus.PENDING
    assert store.get("smith2020b").title_status == ScreeningStatus.INCLUDED
    assert all(
        d.decision == Decision.MAYBE and d.confidence == 0.0
        for d in result.decisions if d.error
    )


def test_quota_on_every_key_leaves_records_pending(store, sample_entries) -> None:
    _seed(store, sample_entries, keys=("k1", "k2"))
    quota = GeminiAPIError("quota exceeded", status_code=429)
    transport = FakeTransport(behaviour={"k1": quota, "k2": quota})
    attempts = MagicMock()

    result = _screener(store, transport, batch_size=10).run_batch(
        store.get_all(), Stage.TITLE, attempt_callback=attempts
    )

    assert len(transport.calls) == 2
    assert [c.args for c in attempts.call_args_list] == [(1, 2), (2, 2)]
    assert result.succeeded == 0
    assert result.errored == 4
    assert all(r.title_status == ScreeningStatus.PENDING for r in store.get_all())


def test_missing_ids_in_response_become_errors(store, sample_entries) -> None:
    _seed(store, sample_entries)
    transport = FakeTransport(default=lambda prompt: json.dumps([
        {"id": entry_ids(prompt)[0], "decision": "EXCLUDE", "confidence": 0.8}
    ]))

    result = _screener(store, transport).run_batch(store.get_all(), Stage.TITLE)

    assert result.succeeded == 2
    assert result.errored == 2
    missing = [d for d in result.decisions if d.error]
    assert {d.record_id for d in missing} == {"doe2021", "lee2019"}
    assert store.get("doe2021").title_status == ScreeningStatus.PENDING


def test_non_array_response_for_multi_record_chunk(store, sample_entries) -> None:
    _seed(store, sample_entries)
    transport = FakeTransport(default=lambda prompt: "I would include all of these.")

    result = _screener(store, transport).run_batch(store.get_all(), Stage.TITLE)

    assert result.succeeded == 0
    assert result.errored == 4


def test_single_record_chunk_accepts_free_text(store, sample_entries) -> None:
    _seed(store, sample_entries)
    transport = FakeTransport(default=lambda prompt: "Exclude: unrelated topic")

    result = _screener(store, transport, batch_size=1).run_batch(store.get_all(), Stage.TITLE)

    assert len(transport.calls) == 4
    assert result.succeeded == 4
    assert all(d.confidence == 0.5 for d in result.decisions)
    assert store.get("lee2019").title_status == ScreeningStatus.EXCLUDED


def test_abstract_stage_uses_title_when_abstract_missing(store, sample_entries) -> None:
    _seed(store, sample_entries)
    store.update_screening("doe2021", Stage.TITLE, ScreeningStatus.INCLUDED)
    transport = FakeTransport()

    _screener(store, transport).run_batch(store.get_all(), Stage.ABSTRACT)

    assert "id: doe2021; abstract: Deep learning for protein folding" in transport.calls[0][1]


def test_rotation_state_saved_after_run(store, sample_entries) -> None:
    _seed(store, sample_entries, keys=("k1", "k2", "k3"))
    transport = FakeTransport()

    result = _screener(store, transport).run_batch(store.get_all(), Stage.TITLE)

    assert [key for key, _ in transport.calls] == ["k1", "k2"]
    assert result.rotation_state == RotationState(2, 3)
    assert RotationState.from_json(store.get_setting(ROTATION_STATE_KEY)) == RotationState(2, 3)


def test_missing_keys_produce_error_decisions(store, sample_entries) -> None:
    store.save_entries(sample_entries, "library.bib")
    transport = FakeTransport()

    result = _screener(store, transport).run_batch(store.get_all(), Stage.TITLE)

    assert transport.calls == []
    assert result.errored == 4
    assert "No Gemini API keys configured" in result.chunk_errors[0]


def test_custom_prompt_from_settings(store, sample_entries) -> None:
    _seed(store, sample_entries)
    store.set_setting("ai_prompt_title", "Only medical papers.\n{entries}")
    transport = FakeTransport()

    _screener(store, transport, batch_size=10).run_batch(store.get_all(), Stage.TITLE)

    assert transport.calls[0][1].startswith("Only medical papers.\nid: smith2020; title:")


def test_summary_report_and_dataframe(store, sample_entries) -> None:
    _seed(store, sample_entries)
    screener = _screener(store, FakeTransport())
    result = screener.run_batch(store.get_all(), Stage.TITLE)

    df = screener.export_to_dataframe(result)
    report = screener.generate_summary_report(result)

    assert len(df) == 4
    assert df["persisted"].all()
    assert "Include: 3" in report
    assert "Exclude: 1" in report


def test_per_record_save_failure_is_reported(store, sample_entries) -> None:
    _seed(store, sample_entries)

    def save_all_but_smith(updates):
        report = store.update_statuses([u for u in updates if u.record_id != "smith2020"])
        return UpdateReport(applied=report.applied, failed={**report.failed, "smith2020": "disk full"})

    store_spy = MagicMock(wraps=store)
    store_spy.update_statuses.side_effect = save_all_but_smith

    screener = _screener(store_spy, FakeTransport())
    result = screener.run_batch(store.get_all(), Stage.TITLE)

    assert result.succeeded == 3
    assert result.errored == 1
    assert result.persistence_failures == {"smith2020": "disk full"}

    assert store.get("smith2020").title_status == ScreeningStatus.PENDING
    assert store.get("lee2019").title_status == ScreeningStatus.INCLUDED
    assert store.get("doe2021").title_status == ScreeningStatus.EXCLUDED

    df = screener.export_to_dataframe(result).set_index("id")
    assert df.loc["smith2020", "ai_decision"] == "INCLUDE"
    assert df.loc["smith2020", "error"] == "disk full"
    assert not df.loc["smith2020", "persisted"]
    assert df.loc["doe2021", "persisted"]


def test_failed_save_marks_every_decision_failed(store, sample_entries) -> None:
    _seed(store, sample_entries)
    store_spy = MagicMock(wraps=store)
    store_spy.update_statuses.side_effect = RuntimeError("database is locked")

    result = _screener(store_spy, FakeTransport()).run_batch(store.get_all(), Stage.TITLE)

    assert result.succeeded == 0
    assert result.errored == 4
    assert set(result.persistence_failures) == {"smith2020", "smith2020b", "doe2021", "lee2019"}
    assert all("database is locked" in reason for reason in result.persistence_failures.values())
    assert all(r.title_status == ScreeningStatus.PENDING for r in store.get_all())

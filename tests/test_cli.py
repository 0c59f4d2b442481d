"""Tests for the offline CLI commands (status, clear-queue, dictionary, show)."""

from click.testing import CliRunner

from hanzi_enrich.cli import main
from hanzi_enrich.database import JobStore
from hanzi_enrich.job_queue import Job
from hanzi_enrich.models import JobState, QueueName


def _invoke(db_path, *args):
    return CliRunner().invoke(main, ["--db", str(db_path), *args])


def test_status_without_workers(tmp_path):
    result = _invoke(tmp_path / "cards.db", "status")

    assert result.exit_code == 0
    assert '"health": "error"' in result.output
    assert "no workers running" in result.output


def test_clear_queue_defaults_to_waiting_and_delayed(tmp_path):
    db_path = tmp_path / "cards.db"
    assert _invoke(db_path, "status").exit_code == 0
    store = JobStore(db_path)
    card = QueueName.CARD_ENRICHMENT
    store.save_job(Job(id="a", queue=card, payload={}, state=JobState.WAITING))
    store.save_job(Job(id="b", queue=card, payload={}, state=JobState.ACTIVE))
    store.save_job(Job(id="c", queue=card, payload={}, state=JobState.FAILED))

    result = _invoke(db_path, "clear-queue", "--queue", card.value)

    assert result.exit_code == 0
    counts = store.counts()[card.value]
    assert counts.waiting == 0
    assert counts.active == 1
    assert counts.failed == 1


def test_clear_queue_failed_records(tmp_path):
    db_path = tmp_path / "cards.db"
    assert _invoke(db_path, "status").exit_code == 0
    store = JobStore(db_path)
    store.save_job(Job(id="c", queue=QueueName.BULK_IMPORT, payload={}, state=JobState.FAILED))

    result = _invoke(db_path, "clear-queue", "--failed")

    assert result.exit_code == 0
    assert store.counts()[QueueName.BULK_IMPORT.value].failed == 0


def test_load_dictionary_and_show(tmp_path):
    db_path = tmp_path / "cards.db"
    cedict = tmp_path / "cedict.u8"
    cedict.write_text("# header\n累 累 [lei4] /tired/weary/\n", encoding="utf-8")

    loaded = _invoke(db_path, "load-dictionary", str(cedict))
    shown = _invoke(db_path, "show", "累")

    assert loaded.exit_code == 0
    assert "Loaded 1 dictionary entries" in loaded.output
    assert shown.exit_code == 0
    assert "累: not yet enriched" in shown.output

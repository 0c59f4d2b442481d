"""Tests for the card store, dictionary selection and job records."""

from hanzi_enrich.database import DictionaryStore, parse_cedict_line, select_preferred_entry
from hanzi_enrich.job_queue import Job, WorkerStats
from hanzi_enrich.models import (
    DeepAnalysis,
    DictionaryEntry,
    EnrichmentResult,
    EnrichmentStatus,
    Etymology,
    JobState,
    LearningTips,
    Mnemonics,
    QueueName,
)


def test_preferred_reading_for_ambiguous_character(dictionary):
    """累 has three readings; learners mean lèi (tired)."""
    entry = select_preferred_entry("累", dictionary.lookup("累"))

    assert entry.pinyin == "lei4"
    assert "tired" in entry.definitions


def test_pinyin_hint_wins(dictionary):
    entry = select_preferred_entry("累", dictionary.lookup("累"), pinyin_hint="léi")

    assert entry.pinyin == "lei2"


def test_keyword_match_when_pinyin_differs():
    entries = [
        DictionaryEntry(traditional="累", pinyin="lei3", definitions=["to accumulate"]),
        DictionaryEntry(traditional="累", pinyin="lui4", definitions=["weary, exhausted"]),
    ]

    assert select_preferred_entry("累", entries).pinyin == "lui4"


def test_unlisted_character_uses_first_entry():
    entries = [DictionaryEntry(traditional="中", pinyin="zhong1"),
               DictionaryEntry(traditional="中", pinyin="zhong4")]

    assert select_preferred_entry("中", entries).pinyin == "zhong1"
    assert select_preferred_entry("中", []) is None


def test_parse_cedict_line():
    entry = parse_cedict_line("累 累 [lei4] /tired/weary/to strain/\n")

    assert entry.traditional == "累"
    assert entry.pinyin == "lei4"
    assert entry.definitions == ["tired", "weary", "to strain"]
    assert parse_cedict_line("# CC-CEDICT header") is None
    assert parse_cedict_line("garbage") is None


def test_load_cedict(tmp_path, db_path):
    path = tmp_path / "cedict.u8"
    path.write_text("# header\n長 长 [chang2] /long/\n長 长 [zhang3] /chief/to grow/\n", encoding="utf-8")
    store = DictionaryStore(db_path)

    assert store.load_cedict(path) == 2
    assert select_preferred_entry("長", store.lookup("長")).pinyin == "zhang3"


def test_save_result_merges_partial_results(card_store):
    """A later partial run never erases fields an earlier run produced."""
    card_store.save_result(EnrichmentResult(
        character="累", meaning="tired", pinyin="lèi", audio_url="/api/media/hanzi/x/audio.mp3",
        status=EnrichmentStatus.PARTIALLY_COMPLETED,
    ))
    merged = card_store.save_result(EnrichmentResult(
        character="累", image_url="/api/media/hanzi/x/image.png",
        status=EnrichmentStatus.PARTIALLY_COMPLETED,
    ))

    assert merged.meaning == "tired"
    assert merged.audio_url is not None
    assert merged.image_url is not None
    assert card_store.get_result("累").image_url == merged.image_url
    assert card_store.has_character("累")


def test_save_result_recomputes_status(card_store):
    analysis = DeepAnalysis(etymology=Etymology(origin="o"), mnemonics=Mnemonics(visual="v"),
                            learning_tips=LearningTips(for_beginners=["t"]))
    card_store.save_result(EnrichmentResult(
        character="好", meaning="good", pinyin="hǎo", audio_url="a", linguistic_analysis=analysis,
        status=EnrichmentStatus.PARTIALLY_COMPLETED,
    ))
    merged = card_store.save_result(EnrichmentResult(
        character="好", image_url="i", status=EnrichmentStatus.PARTIALLY_COMPLETED,
    ))

    assert merged.status == EnrichmentStatus.COMPLETED


def test_replace_drops_old_fields(card_store):
    card_store.save_result(EnrichmentResult(character="累", meaning="tired", audio_url="a"))
    replaced = card_store.save_result(EnrichmentResult(character="累", meaning="tired"), replace=True)

    assert replaced.audio_url is None


def test_decks(card_store):
    deck_id = card_store.create_deck("HSK 1", ["累", "好"])
    card_store.add_to_deck(deck_id, ["好", "長"])

    assert card_store.deck_exists(deck_id)
    assert not card_store.deck_exists("missing")
    assert card_store.deck_characters(deck_id) == ["累", "好", "長"]


def test_job_store_counts_and_pending(job_store):
    waiting = Job(id="a", queue=QueueName.CARD_ENRICHMENT, payload={}, state=JobState.WAITING)
    active = Job(id="b", queue=QueueName.CARD_ENRICHMENT, payload={}, state=JobState.ACTIVE)
    done = Job(id="c", queue=QueueName.CARD_ENRICHMENT, payload={}, state=JobState.COMPLETED)
    for job in (waiting, active, done):
        job_store.save_job(job)

    counts = job_store.counts()
    assert counts["card-enrichment"].waiting == 1
    assert counts["card-enrichment"].active == 1
    assert counts["card-enrichment"].completed == 1
    assert counts["bulk-import"].total == 0

    pending = job_store.pending_jobs(QueueName.CARD_ENRICHMENT)
    assert sorted(job.id for job in pending) == ["a", "b"]
    assert all(job.state == JobState.WAITING for job in pending)


def test_job_store_clear_leaves_active(job_store):
    for job_id, state in (("a", JobState.WAITING), ("b", JobState.ACTIVE), ("c", JobState.FAILED)):
        job_store.save_job(Job(id=job_id, queue=QueueName.DECK_IMPORT, payload={}, state=state))

    cleared = job_store.clear([QueueName.DECK_IMPORT], [JobState.WAITING, JobState.FAILED])

    assert cleared["deck-import"] == {"waiting": 1, "failed": 1}
    counts = job_store.counts()["deck-import"]
    assert counts.active == 1
    assert counts.waiting == 0 and counts.failed == 0


def test_job_store_workers(job_store):
    job_store.save_worker(WorkerStats(name="card-enrichment-0", queue=QueueName.CARD_ENRICHMENT))

    workers = job_store.workers()
    assert [w.name for w in workers] == ["card-enrichment-0"]

"""SQLite-backed card/deck records and the dictionary lookup table."""

import json
import re
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import structlog

from .config import CARDS_DB
from .errors import StorageFailure
from .job_queue import Job, QueueCounts, WorkerStats
from .models import DictionaryEntry, EnrichmentResult, EnrichmentStatus, JobState, QueueName
from .utils import tone_numbers_to_marks

log = structlog.get_logger()


def init_database(db_path: Path = CARDS_DB):
    """Initialize the SQLite database for cards, decks and dictionary entries."""
    db_exists = db_path.exists()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS characters(
            character TEXT PRIMARY KEY,
            result TEXT,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS decks(
            deck_id TEXT PRIMARY KEY,
            name TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS deck_cards(
            deck_id TEXT,
            character TEXT,
            position INTEGER,
            PRIMARY KEY (deck_id, character)
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS dictionary(
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            traditional TEXT NOT NULL,
            simplified TEXT,
            pinyin TEXT NOT NULL,
            definitions TEXT
        )
    """)
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_dictionary_traditional ON dictionary(traditional)")
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS jobs(
            job_id TEXT PRIMARY KEY,
            queue TEXT NOT NULL,
            state TEXT NOT NULL,
            data TEXT,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS workers(
            name TEXT PRIMARY KEY,
            queue TEXT NOT NULL,
            data TEXT
        )
    """)

    conn.commit()
    conn.close()

    if db_exists:
        log.info("Database connected", db_path=str(db_path))
    else:
        log.info("Database created", db_path=str(db_path))


class CardStore:
    """Card and deck records. Writes merge, so partial results never erase good fields."""

    def __init__(self, db_path: Path = CARDS_DB):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        try:
            return sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise StorageFailure(f"Card store unavailable: {e}") from e

    def get_result(self, character: str) -> Optional[EnrichmentResult]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT result FROM characters WHERE character = ?", (character,)
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageFailure(f"Card store read failed: {e}") from e
        finally:
            conn.close()

        if row and row[0]:
            return EnrichmentResult.model_validate_json(row[0])
        return None

    def has_character(self, character: str) -> bool:
        existing = self.get_result(character)
        return existing is not None and existing.meaning is not None

    def save_result(self, result: EnrichmentResult, replace: bool = False) -> EnrichmentResult:
        """Persist a result. Unless ``replace``, None fields keep the stored value."""
        merged = result
        if not replace:
            existing = self.get_result(result.character)
            if existing is not None:
                updates = {
                    name: getattr(result, name)
                    for name in EnrichmentResult.model_fields
                    if name != "attempts" and getattr(result, name) is not None
                }
                merged = existing.model_copy(update=updates)
        if merged.status in (EnrichmentStatus.COMPLETED, EnrichmentStatus.PARTIALLY_COMPLETED):
            merged.status = (EnrichmentStatus.PARTIALLY_COMPLETED if merged.missing_fields()
                             else EnrichmentStatus.COMPLETED)
        merged.updated_at = datetime.now()

        conn = self._connect()
        try:
            conn.execute("""
                INSERT OR REPLACE INTO characters (character, result, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
            """, (merged.character, merged.model_dump_json()))
            conn.commit()
        except sqlite3.Error as e:
            raise StorageFailure(f"Card store write failed: {e}") from e
        finally:
            conn.close()
        return merged

    def create_deck(self, name: str, characters: Iterable[str] = ()) -> str:
        deck_id = uuid.uuid4().hex[:12]
        conn = self._connect()
        try:
            conn.execute("INSERT INTO decks (deck_id, name) VALUES (?, ?)", (deck_id, name))
            conn.commit()
        except sqlite3.Error as e:
            raise StorageFailure(f"Could not create deck: {e}") from e
        finally:
            conn.close()
        self.add_to_deck(deck_id, characters)
        log.info("Deck created", deck_id=deck_id, name=name)
        return deck_id

    def add_to_deck(self, deck_id: str, characters: Iterable[str]):
        conn = self._connect()
        try:
            start = conn.execute(
                "SELECT COALESCE(MAX(position), -1) + 1 FROM deck_cards WHERE deck_id = ?", (deck_id,)
            ).fetchone()[0]
            for offset, character in enumerate(characters):
                conn.execute(
                    "INSERT OR IGNORE INTO deck_cards (deck_id, character, position) VALUES (?, ?, ?)",
                    (deck_id, character, start + offset),
                )
            conn.commit()
        except sqlite3.Error as e:
            raise StorageFailure(f"Could not add cards to deck: {e}") from e
        finally:
            conn.close()

    def deck_exists(self, deck_id: str) -> bool:
        conn = self._connect()
        try:
            row = conn.execute("SELECT 1 FROM decks WHERE deck_id = ?", (deck_id,)).fetchone()
        finally:
            conn.close()
        return row is not None

    def deck_characters(self, deck_id: str) -> List[str]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT character FROM deck_cards WHERE deck_id = ? ORDER BY position", (deck_id,)
            ).fetchall()
        finally:
            conn.close()
        return [row[0] for row in rows]


# Characters with several common readings, and the one learners usually mean.
# (character, preferred pinyin spellings, definition keywords)
PRONUNCIATION_PREFERENCES = {
    "累": (["lei4", "lèi"], ["tired", "weary", "exhausted"]),
    "長": (["zhang3", "zhǎng"], ["grow", "chief", "elder"]),
    "行": (["xing2", "xíng"], ["walk", "go", "travel", "ok"]),
    "重": (["zhong4", "zhòng"], ["heavy", "weight", "important"]),
    "得": (["de2", "dé"], ["obtain", "get", "gain"]),
    "好": (["hao3", "hǎo"], ["good", "well", "fine"]),
    "為": (["wei4", "wèi"], ["for", "because of", "sake"]),
    "樂": (["le4", "lè"], ["happy", "joy", "pleasure"]),
    "少": (["shao3", "shǎo"], ["few", "little", "less"]),
    "還": (["hai2", "hái"], ["still", "yet", "also"]),
}


def select_preferred_entry(
    character: str,
    entries: List[DictionaryEntry],
    pinyin_hint: Optional[str] = None,
) -> Optional[DictionaryEntry]:
    """Pick one dictionary entry deterministically.

    Order: caller hint, preferred pinyin, preferred keyword, first entry.
    Ambiguous characters missing from the table fall back to the first entry.
    """
    if not entries:
        return None
    if len(entries) == 1:
        return entries[0]

    def _matches(entry: DictionaryEntry, wanted: str) -> bool:
        wanted = wanted.lower()
        raw = entry.pinyin.lower()
        return wanted in raw or wanted in tone_numbers_to_marks(raw)

    if pinyin_hint:
        for entry in entries:
            if _matches(entry, pinyin_hint):
                return entry

    preference = PRONUNCIATION_PREFERENCES.get(character)
    if preference is None:
        return entries[0]

    preferred_pinyin, keywords = preference
    for wanted in preferred_pinyin:
        for entry in entries:
            if _matches(entry, wanted):
                return entry

    for entry in entries:
        text = " ".join(entry.definitions).lower()
        if any(re.search(rf"\b{re.escape(keyword)}\b", text) for keyword in keywords):
            return entry

    return entries[0]


_CEDICT_LINE = re.compile(r"^(\S+)\s+(\S+)\s+\[([^\]]+)\]\s+/(.+)/\s*$")


def parse_cedict_line(line: str) -> Optional[DictionaryEntry]:
    """Parse one CC-CEDICT line, e.g. ``累 累 [lei4] /tired/weary/``."""
    line = line.strip()
    if not line or line.startswith("#"):
        return None
    match = _CEDICT_LINE.match(line)
    if not match:
        return None
    traditional, simplified, pinyin, definitions = match.groups()
    return DictionaryEntry(
        traditional=traditional,
        simplified=simplified,
        pinyin=pinyin,
        definitions=[d for d in definitions.split("/") if d],
    )


class DictionaryStore:
    """Keyed lookup by traditional-script string. May return several entries."""

    def __init__(self, db_path: Path = CARDS_DB):
        self.db_path = db_path

    def lookup(self, traditional: str) -> List[DictionaryEntry]:
        conn = sqlite3.connect(self.db_path)
        try:
            rows = conn.execute(
                "SELECT traditional, simplified, pinyin, definitions FROM dictionary "
                "WHERE traditional = ? ORDER BY id",
                (traditional,),
            ).fetchall()
        finally:
            conn.close()
        return [
            DictionaryEntry(
                traditional=row[0], simplified=row[1] or "", pinyin=row[2],
                definitions=json.loads(row[3] or "[]"),
            )
            for row in rows
        ]

    def add_entries(self, entries: Iterable[DictionaryEntry]) -> int:
        conn = sqlite3.connect(self.db_path)
        count = 0
        try:
            for entry in entries:
                conn.execute(
                    "INSERT INTO dictionary (traditional, simplified, pinyin, definitions) VALUES (?, ?, ?, ?)",
                    (entry.traditional, entry.simplified, entry.pinyin, json.dumps(entry.definitions)),
                )
                count += 1
            conn.commit()
        finally:
            conn.close()
        return count

    def load_cedict(self, file_path: Path) -> int:
        """Load a CC-CEDICT file. Returns the number of entries added."""
        with open(file_path, 'r', encoding='utf-8') as f:
            entries = [entry for entry in map(parse_cedict_line, f) if entry is not None]
        count = self.add_entries(entries)
        log.info("Dictionary loaded", file=str(file_path), entries=count)
        return count


PENDING_STATES = (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE)


class JobStore:
    """Job records and worker heartbeats, so status survives the process that ran the jobs."""

    def __init__(self, db_path: Path = CARDS_DB):
        self.db_path = db_path

    def _execute(self, sql: str, params=()) -> List[tuple]:
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise StorageFailure(f"Job store unavailable: {e}") from e
        try:
            rows = conn.execute(sql, params).fetchall()
            conn.commit()
            return rows
        except sqlite3.Error as e:
            raise StorageFailure(f"Job store query failed: {e}") from e
        finally:
            conn.close()

    def save_job(self, job: Job):
        self._execute("""
            INSERT OR REPLACE INTO jobs (job_id, queue, state, data, updated_at)
            VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
        """, (job.id, job.queue.value, job.state.value, job.model_dump_json()))

    def delete_jobs(self, job_ids: Iterable[str]):
        for job_id in job_ids:
            self._execute("DELETE FROM jobs WHERE job_id = ?", (job_id,))

    def pending_jobs(self, queue: QueueName) -> List[Job]:
        """Jobs left unfinished, oldest first. Interrupted active jobs come back as waiting."""
        placeholders = ", ".join("?" for _ in PENDING_STATES)
        rows = self._execute(
            f"SELECT data FROM jobs WHERE queue = ? AND state IN ({placeholders}) ORDER BY rowid",
            (queue.value, *[state.value for state in PENDING_STATES]),
        )
        jobs = [Job.model_validate_json(row[0]) for row in rows]
        for job in jobs:
            job.state = JobState.WAITING
        return jobs

    def counts(self) -> Dict[str, QueueCounts]:
        counts = {name.value: QueueCounts() for name in QueueName}
        for queue, state, total in self._execute(
            "SELECT queue, state, COUNT(*) FROM jobs GROUP BY queue, state"
        ):
            if queue in counts and state in QueueCounts.model_fields:
                setattr(counts[queue], state, total)
        return counts

    def clear(self, queues: Optional[Iterable[QueueName]] = None,
              states: Iterable[JobState] = (JobState.WAITING, JobState.DELAYED)) -> Dict[str, Dict[str, int]]:
        """Delete job records in ``states``. Active jobs are never cleared."""
        states = set(states)
        if JobState.ACTIVE in states:
            raise ValueError("Active jobs cannot be cleared")
        selected = list(queues) if queues else list(QueueName)
        cleared: Dict[str, Dict[str, int]] = {}
        for queue in selected:
            cleared[queue.value] = {}
            for state in states:
                total = self._execute(
                    "SELECT COUNT(*) FROM jobs WHERE queue = ? AND state = ?", (queue.value, state.value)
                )[0][0]
                self._execute("DELETE FROM jobs WHERE queue = ? AND state = ?", (queue.value, state.value))
                cleared[queue.value][state.value] = total
        log.info("Job records cleared", cleared=cleared)
        return cleared

    def save_worker(self, stats: WorkerStats):
        self._execute(
            "INSERT OR REPLACE INTO workers (name, queue, data) VALUES (?, ?, ?)",
            (stats.name, stats.queue.value, stats.model_dump_json()),
        )

    def workers(self) -> List[WorkerStats]:
        rows = self._execute("SELECT data FROM workers ORDER BY name")
        return [WorkerStats.model_validate_json(row[0]) for row in rows]

"""Command-line interface for the character enrichment pipeline."""

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import click
import structlog

from .config import CARDS_DB, INPUT_CHARACTERS_FILE, JOB_PRIORITIES, SMART_PROMPTS
from .database import CardStore, DictionaryStore, JobStore, init_database
from .errors import EnrichmentError
from .job_queue import Job, QueueManager, build_status
from .models import EnrichmentRequest, GenerationPolicy, JobState, QueueName, RequestSource, UserLevel
from .orchestrator import build_orchestrator
from .utils import load_characters_from_file
from .workers import build_queue_manager

log = structlog.get_logger()


def configure_logging(verbose: bool = False):
    """JSON logs by default; human-readable console output with --verbose."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")
    renderer = structlog.dev.ConsoleRenderer() if verbose else structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


async def _run_with_queues(db: Path, submit) -> List[Job]:
    """Start the queues, submit jobs, wait for everything to drain, stop."""
    card_store = CardStore(db)
    orchestrator = build_orchestrator(card_store=card_store, dictionary=DictionaryStore(db))
    manager = build_queue_manager(orchestrator, card_store, store=JobStore(db))
    await manager.start()
    try:
        jobs = await submit(manager)
        await manager.join()
        finished = [await manager.wait(job) for job in jobs]
        status = manager.status()
        log.info("Queues drained", health=status.health.value,
                 counts={name: counts.model_dump() for name, counts in status.queues.items()})
        return finished
    finally:
        await manager.stop()


def _emit(jobs: List[Job]):
    for job in jobs:
        click.echo(json.dumps({
            "job_id": job.id,
            "queue": job.queue.value,
            "state": job.state.value,
            "attempts": job.attempts,
            "error": job.error,
            "result": job.result,
        }, ensure_ascii=False, indent=2))


@click.group()
@click.option("--db", type=click.Path(path_type=Path), default=CARDS_DB, help="SQLite database path")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def main(ctx: click.Context, db: Path, verbose: bool):
    """Enrich Traditional Chinese characters with audio, images and linguistic notes."""
    configure_logging(verbose)
    init_database(db)
    ctx.obj = {"db": db}


@main.command()
@click.argument("characters", nargs=-1, required=True)
@click.option("--force", is_flag=True, help="Regenerate even if media already exists")
@click.option("--smart/--deterministic", default=SMART_PROMPTS, help="Image prompt strategy")
@click.option("--level", type=click.Choice([l.value for l in UserLevel]), default=UserLevel.BEGINNER.value,
              help="Learner level for the linguistic analysis")
@click.option("--meaning", default=None, help="Known meaning (disambiguation) for a single character")
@click.option("--pinyin", default=None, help="Known pinyin (disambiguation) for a single character")
@click.pass_context
def enrich(ctx, characters, force, smart, level, meaning, pinyin):
    """Enrich one or more characters through the card-enrichment queue."""
    policy = GenerationPolicy(force=force, smart_prompts=smart, user_level=UserLevel(level))

    async def submit(manager: QueueManager):
        jobs = []
        for character in characters:
            request = EnrichmentRequest(
                character=character, policy=policy, source=RequestSource.USER,
                meaning_hint=meaning if len(characters) == 1 else None,
                pinyin_hint=pinyin if len(characters) == 1 else None,
            )
            jobs.append(await manager.enqueue(
                QueueName.CARD_ENRICHMENT, {"request": request.model_dump(mode="json")},
                priority=JOB_PRIORITIES["user"],
            ))
        return jobs

    _emit(asyncio.run(_run_with_queues(ctx.obj["db"], submit)))


@main.command(name="import")
@click.argument("input_file", type=click.Path(exists=True, path_type=Path), default=INPUT_CHARACTERS_FILE)
@click.option("--deck", "deck_name", default=None, help="Create a deck with this name")
@click.option("--force", is_flag=True, help="Re-enrich characters that already exist")
@click.option("--smart/--deterministic", default=SMART_PROMPTS, help="Image prompt strategy")
@click.option("--dry-run", is_flag=True, help="Show what would be imported without doing it")
@click.pass_context
def import_characters(ctx, input_file: Path, deck_name: Optional[str], force, smart, dry_run):
    """Import characters from a file (one per line) as a deck or a bulk import."""
    characters = load_characters_from_file(input_file)
    if not characters:
        log.warning("No characters found in input file")
        return
    if dry_run:
        log.info("Dry run mode - would import characters", characters=characters[:10])
        return

    policy = GenerationPolicy(force=force, smart_prompts=smart).model_dump(mode="json")

    async def submit(manager: QueueManager):
        if deck_name:
            return [await manager.enqueue(
                QueueName.DECK_IMPORT,
                {"name": deck_name, "characters": characters, "policy": policy},
                priority=JOB_PRIORITIES["deck"],
            )]
        return [await manager.enqueue(
            QueueName.BULK_IMPORT, {"characters": characters, "policy": policy},
            priority=JOB_PRIORITIES["bulk"],
        )]

    _emit(asyncio.run(_run_with_queues(ctx.obj["db"], submit)))


@main.command(name="enrich-deck")
@click.argument("deck_id")
@click.option("--force", is_flag=True, help="Regenerate media for every card")
@click.option("--smart/--deterministic", default=SMART_PROMPTS, help="Image prompt strategy")
@click.pass_context
def enrich_deck(ctx, deck_id: str, force: bool, smart: bool):
    """Re-enrich every character of an existing deck."""
    policy = GenerationPolicy(force=force, smart_prompts=smart).model_dump(mode="json")

    async def submit(manager: QueueManager):
        return [await manager.enqueue(
            QueueName.DECK_ENRICHMENT, {"deck_id": deck_id, "policy": policy},
            priority=JOB_PRIORITIES["deck"],
        )]

    _emit(asyncio.run(_run_with_queues(ctx.obj["db"], submit)))


@main.command()
@click.pass_context
def status(ctx):
    """Print per-queue job counts, worker heartbeats and overall health."""
    store = JobStore(ctx.obj["db"])
    try:
        report = build_status(store.counts(), store.workers())
    except EnrichmentError as e:
        raise click.ClickException(str(e))
    click.echo(report.model_dump_json(indent=2))


@main.command(name="clear-queue")
@click.option("--queue", "queues", multiple=True, type=click.Choice([q.value for q in QueueName]),
              help="Queue to clear (repeatable, default all)")
@click.option("--waiting", is_flag=True, help="Clear waiting jobs")
@click.option("--delayed", is_flag=True, help="Clear delayed retries")
@click.option("--failed", is_flag=True, help="Clear failed job records")
@click.option("--completed", is_flag=True, help="Clear completed job records")
@click.pass_context
def clear_queue(ctx, queues, waiting, delayed, failed, completed):
    """Clear jobs by state. Active jobs are never cleared."""
    states = [state for state, selected in (
        (JobState.WAITING, waiting), (JobState.DELAYED, delayed),
        (JobState.FAILED, failed), (JobState.COMPLETED, completed),
    ) if selected]
    if not states:
        states = [JobState.WAITING, JobState.DELAYED]
    try:
        cleared = JobStore(ctx.obj["db"]).clear([QueueName(q) for q in queues], states)
    except EnrichmentError as e:
        raise click.ClickException(str(e))
    click.echo(json.dumps(cleared, indent=2))


@main.command(name="load-dictionary")
@click.argument("cedict_file", type=click.Path(exists=True, path_type=Path))
@click.pass_context
def load_dictionary(ctx, cedict_file: Path):
    """Load a CC-CEDICT file into the dictionary table."""
    count = DictionaryStore(ctx.obj["db"]).load_cedict(cedict_file)
    click.echo(f"Loaded {count} dictionary entries")


@main.command()
@click.argument("characters", nargs=-1, required=True)
@click.pass_context
def show(ctx, characters):
    """Print stored enrichment results."""
    store = CardStore(ctx.obj["db"])
    for character in characters:
        try:
            result = store.get_result(character)
        except EnrichmentError as e:
            raise click.ClickException(str(e))
        if result is None:
            click.echo(f"{character}: not yet enriched")
        else:
            click.echo(result.model_dump_json(indent=2))


if __name__ == "__main__":
    main()

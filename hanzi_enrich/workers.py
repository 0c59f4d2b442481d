"""Job handlers for the four queue categories."""

from typing import Any, Dict, List, Tuple

import structlog

from .config import BULK_BATCH_SIZE, JOB_PRIORITIES
from .database import CardStore
from .errors import MalformedInput
from .job_queue import Job, JobContext, JobHandler, QueueManager
from .models import (
    EnrichmentRequest,
    EnrichmentStatus,
    GenerationPolicy,
    QueueName,
    RequestSource,
)
from .orchestrator import EnrichmentOrchestrator
from .utils import validate_character

log = structlog.get_logger()


def split_valid(characters: List[str]) -> Tuple[List[str], List[Dict[str, str]]]:
    """Separate usable characters from malformed ones, dropping duplicates."""
    valid, invalid, seen = [], [], set()
    for raw in characters:
        try:
            character = validate_character(raw)
        except MalformedInput as e:
            invalid.append({"input": raw, "error": str(e)})
            continue
        if character not in seen:
            seen.add(character)
            valid.append(character)
    return valid, invalid


def priority_for(source: RequestSource) -> int:
    return JOB_PRIORITIES.get(source.value, 0)


class EnrichmentWorkers:
    """Binds the orchestrator and card store to queue handlers."""

    def __init__(self, orchestrator: EnrichmentOrchestrator, card_store: CardStore):
        self.orchestrator = orchestrator
        self.card_store = card_store

    def handlers(self) -> Dict[QueueName, JobHandler]:
        return {
            QueueName.CARD_ENRICHMENT: self.card_enrichment,
            QueueName.DECK_ENRICHMENT: self.deck_enrichment,
            QueueName.DECK_IMPORT: self.deck_import,
            QueueName.BULK_IMPORT: self.bulk_import,
        }

    async def card_enrichment(self, job: Job, ctx: JobContext) -> Dict[str, Any]:
        request = EnrichmentRequest.model_validate(job.payload["request"])
        ctx.report(processed=0, total=1, current_item=request.character)
        result = await self.orchestrator.enrich(
            request, on_progress=lambda stage, character: ctx.report(stage=stage.value)
        )
        ctx.report(processed=1)
        return result.model_dump(mode="json")

    async def _enrich_all(self, characters: List[str], policy: GenerationPolicy,
                          deck_id: str, ctx: JobContext) -> Dict[str, Any]:
        summary: Dict[str, Any] = {"deck_id": deck_id, "total": len(characters),
                                   "completed": 0, "partially_completed": 0, "skipped": []}
        ctx.report(processed=0, total=len(characters))
        for index, character in enumerate(characters):
            ctx.report(current_item=character)
            request = EnrichmentRequest(character=character, policy=policy,
                                        source=RequestSource.DECK, deck_id=deck_id)
            try:
                result = await self.orchestrator.enrich(
                    request, on_progress=lambda stage, _: ctx.report(stage=stage.value)
                )
            except MalformedInput as e:
                log.warning("Skipping malformed deck character", deck_id=deck_id,
                            character=character, error=str(e))
                summary["skipped"].append(character)
            else:
                if result.status == EnrichmentStatus.COMPLETED:
                    summary["completed"] += 1
                else:
                    summary["partially_completed"] += 1
            ctx.report(processed=index + 1)
        log.info("Deck enrichment finished", **summary)
        return summary

    async def deck_enrichment(self, job: Job, ctx: JobContext) -> Dict[str, Any]:
        deck_id = job.payload["deck_id"]
        policy = GenerationPolicy.model_validate(job.payload.get("policy", {}))
        if not self.card_store.deck_exists(deck_id):
            raise MalformedInput(f"Deck not found: {deck_id}")
        characters = self.card_store.deck_characters(deck_id)
        return await self._enrich_all(characters, policy, deck_id, ctx)

    async def deck_import(self, job: Job, ctx: JobContext) -> Dict[str, Any]:
        name = job.payload.get("name") or "Imported deck"
        policy = GenerationPolicy.model_validate(job.payload.get("policy", {}))
        valid, invalid = split_valid(job.payload.get("characters", []))
        if not valid:
            raise MalformedInput(f"No valid characters to import into {name!r}")

        # A retried job reuses the deck it created on the first attempt.
        deck_id = job.payload.get("deck_id")
        if not deck_id:
            deck_id = self.card_store.create_deck(name, valid)
            job.payload["deck_id"] = deck_id

        summary = await self._enrich_all(valid, policy, deck_id, ctx)
        summary["invalid"] = invalid
        return summary

    async def bulk_import(self, job: Job, ctx: JobContext) -> Dict[str, Any]:
        policy = GenerationPolicy.model_validate(job.payload.get("policy", {}))
        valid, invalid = split_valid(job.payload.get("characters", []))

        to_enrich, existing = [], []
        for character in valid:
            if not policy.force and self.card_store.has_character(character):
                existing.append(character)
            else:
                to_enrich.append(character)

        deck_id = job.payload.get("deck_id")
        if deck_id:
            self.card_store.add_to_deck(deck_id, valid)

        job_ids = []
        ctx.report(processed=0, total=len(to_enrich))
        for start in range(0, len(to_enrich), BULK_BATCH_SIZE):
            batch = to_enrich[start:start + BULK_BATCH_SIZE]
            for character in batch:
                request = EnrichmentRequest(character=character, policy=policy,
                                            source=RequestSource.BULK, deck_id=deck_id)
                child = await ctx.enqueue(
                    QueueName.CARD_ENRICHMENT,
                    {"request": request.model_dump(mode="json")},
                    priority=priority_for(RequestSource.BULK),
                )
                job_ids.append(child.id)
            ctx.report(processed=start + len(batch), current_item=batch[-1])
            log.info("Bulk import batch queued", batch_size=len(batch), queued=len(job_ids))

        return {
            "queued": len(job_ids),
            "job_ids": job_ids,
            "skipped_existing": existing,
            "invalid": invalid,
        }


def build_queue_manager(orchestrator: EnrichmentOrchestrator, card_store: CardStore,
                        **kwargs) -> QueueManager:
    workers = EnrichmentWorkers(orchestrator, card_store)
    return QueueManager(
        workers.handlers(),
        min_job_timeout_s=orchestrator.worst_case_latency_s(),
        **kwargs,
    )

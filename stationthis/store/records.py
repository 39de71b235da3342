"""Execution Record Store: the coordinator's only shared resource.

All mutations are partial and conditional. Runs are guarded by
`version` + `status = 'running'` (compare-and-set); Step Results by
`expected_status`. Callers never replace whole documents.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import UTC
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from stationthis.infra.errors import (
    AggregationConflict,
    DuplicateCompletionError,
    DuplicateDispatchError,
    RecordStoreError,
    RunNotFoundError,
    SpellNotFoundError,
    StepResultNotFoundError,
)
from stationthis.pipeline.definitions import SpellDefinition
from stationthis.pipeline.models import (
    DeliveryMode,
    Run,
    RunKind,
    RunStatus,
    StepResult,
    StepStatus,
)
from stationthis.store.models import RunRecord, SpellRecord, StepResultRecord

logger = structlog.get_logger()

# Run fields a patch may touch; "version" is owned by the store.
RUN_PATCH_FIELDS = frozenset({
    "status",
    "accumulated_cost",
    "step_result_ids",
    "final_step_result_id",
    "failure_reason",
    "completed_at",
})

STEP_PATCH_FIELDS = frozenset({
    "status",
    "external_ref",
    "raw_payload",
    "output_payload",
    "cost_delta",
    "duration_ms",
    "error",
    "completed_at",
})


def _check_patch(patch: dict[str, Any], allowed: frozenset[str], kind: str) -> None:
    extra = set(patch) - allowed
    if extra:
        raise RecordStoreError(f"Unsupported {kind} patch fields: {sorted(extra)}")


class RecordStore(ABC):
    """Persistence interface consumed by the coordinator."""

    @abstractmethod
    async def create_run(self, run: Run) -> Run: ...

    @abstractmethod
    async def get_run(self, run_id: str) -> Run:
        """Raises RunNotFoundError."""
        ...

    @abstractmethod
    async def update_run(
        self, run_id: str, patch: dict[str, Any], *, expected_version: int
    ) -> Run:
        """Conditional partial update of a running Run.

        Applies only if the stored version equals expected_version and the
        Run is still running; bumps version. Raises AggregationConflict otherwise.
        """
        ...

    @abstractmethod
    async def create_step_result(self, step: StepResult) -> StepResult:
        """Raises DuplicateDispatchError if (run_id, step_index) already exists."""
        ...

    @abstractmethod
    async def get_step_result(self, step_result_id: str) -> StepResult:
        """Raises StepResultNotFoundError."""
        ...

    @abstractmethod
    async def find_step_by_external_ref(self, external_ref: str) -> StepResult | None: ...

    @abstractmethod
    async def update_step_result(
        self,
        step_result_id: str,
        patch: dict[str, Any],
        *,
        expected_status: StepStatus | None = None,
    ) -> StepResult:
        """Partial update. With expected_status, applies only if the stored
        status matches; raises DuplicateCompletionError otherwise.
        """
        ...

    @abstractmethod
    async def list_step_results(self, run_id: str) -> list[StepResult]:
        """All Step Results of a run ordered by step_index."""
        ...

    @abstractmethod
    async def get_spell(self, slug: str) -> SpellDefinition:
        """Raises SpellNotFoundError."""
        ...

    @abstractmethod
    async def upsert_spell(self, spell: SpellDefinition) -> None: ...


class PgRecordStore(RecordStore):
    """PostgreSQL implementation. Multi-worker safe: every write is a single
    conditional statement; no in-process locks or caches.
    """

    def __init__(self, db_session_factory: async_sessionmaker) -> None:
        self._db = db_session_factory

    # -- runs ---------------------------------------------------------------

    async def create_run(self, run: Run) -> Run:
        async with self._db() as db_session:
            db_session.add(
                RunRecord(
                    id=run.id,
                    kind=run.kind.value,
                    definition_id=run.definition_id,
                    definition=run.definition.model_dump(mode="json", by_alias=True),
                    initiator_id=run.initiator_id,
                    platform=run.platform,
                    status=run.status.value,
                    accumulated_cost=run.accumulated_cost,
                    step_result_ids=list(run.step_result_ids),
                    initial_context=run.initial_context,
                    notification_context=run.notification_context,
                    run_metadata=run.metadata,
                    version=run.version,
                    started_at=run.started_at,
                )
            )
            await db_session.commit()
        logger.info("run_created", run_id=run.id, definition_id=run.definition_id)
        return run

    async def get_run(self, run_id: str) -> Run:
        async with self._db() as db_session:
            record = await db_session.get(RunRecord, run_id)
        if record is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return _run_from_record(record)

    async def update_run(
        self, run_id: str, patch: dict[str, Any], *, expected_version: int
    ) -> Run:
        _check_patch(patch, RUN_PATCH_FIELDS, "run")
        values = {
            k: (v.value if isinstance(v, RunStatus) else v) for k, v in patch.items()
        }
        values["version"] = RunRecord.version + 1

        async with self._db() as db_session:
            stmt = (
                update(RunRecord)
                .where(
                    RunRecord.id == run_id,
                    RunRecord.version == expected_version,
                    RunRecord.status == RunStatus.running.value,
                )
                .values(**values)
                .returning(RunRecord)
                .execution_options(synchronize_session=False)
            )
            result = await db_session.execute(stmt)
            record = result.scalar_one_or_none()
            if record is None:
                raise AggregationConflict(
                    f"Run {run_id} changed concurrently or is no longer running "
                    f"(expected version {expected_version})"
                )
            run = _run_from_record(record)
            await db_session.commit()
        return run

    # -- step results -------------------------------------------------------

    async def create_step_result(self, step: StepResult) -> StepResult:
        try:
            async with self._db() as db_session:
                db_session.add(
                    StepResultRecord(
                        id=step.id,
                        run_id=step.run_id,
                        step_index=step.step_index,
                        tool_id=step.tool_id,
                        delivery_mode=step.delivery_mode.value,
                        status=step.status.value,
                        input_context=step.input_context,
                        resolved_inputs=step.resolved_inputs,
                        external_ref=step.external_ref,
                        raw_payload=step.raw_payload,
                        output_payload=step.output_payload,
                        cost_delta=step.cost_delta,
                        duration_ms=step.duration_ms,
                        error=step.error,
                        is_final=step.is_final,
                        created_at=step.created_at,
                        completed_at=step.completed_at,
                    )
                )
                await db_session.commit()
        except IntegrityError as e:
            if "uq_step_results_run_step" in str(e.orig):
                raise DuplicateDispatchError(
                    f"Step {step.step_index} of run {step.run_id} already dispatched"
                ) from e
            raise RecordStoreError(f"Step result insert failed: {e.orig}") from e
        return step

    async def get_step_result(self, step_result_id: str) -> StepResult:
        async with self._db() as db_session:
            record = await db_session.get(StepResultRecord, step_result_id)
        if record is None:
            raise StepResultNotFoundError(f"Step result not found: {step_result_id}")
        return _step_from_record(record)

    async def find_step_by_external_ref(self, external_ref: str) -> StepResult | None:
        async with self._db() as db_session:
            stmt = select(StepResultRecord).where(
                StepResultRecord.external_ref == external_ref
            )
            result = await db_session.execute(stmt)
            record = result.scalar_one_or_none()
        return _step_from_record(record) if record is not None else None

    async def update_step_result(
        self,
        step_result_id: str,
        patch: dict[str, Any],
        *,
        expected_status: StepStatus | None = None,
    ) -> StepResult:
        _check_patch(patch, STEP_PATCH_FIELDS, "step result")
        values = {
            k: (v.value if isinstance(v, StepStatus) else v) for k, v in patch.items()
        }
        conditions = [StepResultRecord.id == step_result_id]
        if expected_status is not None:
            conditions.append(StepResultRecord.status == expected_status.value)

        async with self._db() as db_session:
            stmt = (
                update(StepResultRecord)
                .where(*conditions)
                .values(**values)
                .returning(StepResultRecord)
                .execution_options(synchronize_session=False)
            )
            try:
                result = await db_session.execute(stmt)
            except IntegrityError as e:
                await db_session.rollback()
                raise RecordStoreError(f"Step result update failed: {e.orig}") from e
            record = result.scalar_one_or_none()
            if record is None:
                exists = await db_session.get(StepResultRecord, step_result_id)
                if exists is None:
                    raise StepResultNotFoundError(
                        f"Step result not found: {step_result_id}"
                    )
                raise DuplicateCompletionError(
                    f"Step result {step_result_id} is '{exists.status}', "
                    f"expected '{expected_status}'"
                )
            step = _step_from_record(record)
            await db_session.commit()
        return step

    async def list_step_results(self, run_id: str) -> list[StepResult]:
        async with self._db() as db_session:
            stmt = (
                select(StepResultRecord)
                .where(StepResultRecord.run_id == run_id)
                .order_by(StepResultRecord.step_index)
            )
            result = await db_session.execute(stmt)
            records = result.scalars().all()
        return [_step_from_record(r) for r in records]

    # -- spells -------------------------------------------------------------

    async def get_spell(self, slug: str) -> SpellDefinition:
        async with self._db() as db_session:
            record = await db_session.get(SpellRecord, slug)
        if record is None:
            raise SpellNotFoundError(f"Spell not found: {slug}")
        return SpellDefinition.model_validate(
            {"slug": record.slug, "name": record.name, "steps": record.steps}
        )

    async def upsert_spell(self, spell: SpellDefinition) -> None:
        steps = [s.model_dump(mode="json", by_alias=True) for s in spell.steps]
        async with self._db() as db_session:
            stmt = (
                pg_insert(SpellRecord)
                .values(slug=spell.slug, name=spell.name, steps=steps)
                .on_conflict_do_update(
                    index_elements=["slug"],
                    set_={"name": spell.name, "steps": steps, "updated_at": func.now()},
                )
            )
            await db_session.execute(stmt)
            await db_session.commit()
        logger.info("spell_upserted", slug=spell.slug, steps=len(spell.steps))


def _aware(dt):
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def _run_from_record(record: RunRecord) -> Run:
    return Run(
        id=record.id,
        definition=SpellDefinition.model_validate(record.definition),
        initiator_id=record.initiator_id,
        kind=RunKind(record.kind),
        platform=record.platform,
        status=RunStatus(record.status),
        accumulated_cost=Decimal(record.accumulated_cost or 0),
        step_result_ids=list(record.step_result_ids or []),
        initial_context=dict(record.initial_context or {}),
        notification_context=dict(record.notification_context or {}),
        metadata=dict(record.run_metadata or {}),
        final_step_result_id=record.final_step_result_id,
        failure_reason=record.failure_reason,
        version=record.version,
        started_at=_aware(record.started_at),
        completed_at=_aware(record.completed_at),
    )


def _step_from_record(record: StepResultRecord) -> StepResult:
    return StepResult(
        id=record.id,
        run_id=record.run_id,
        step_index=record.step_index,
        tool_id=record.tool_id,
        delivery_mode=DeliveryMode(record.delivery_mode),
        status=StepStatus(record.status),
        input_context=dict(record.input_context or {}),
        resolved_inputs=dict(record.resolved_inputs or {}),
        external_ref=record.external_ref,
        raw_payload=record.raw_payload,
        output_payload=record.output_payload,
        cost_delta=Decimal(record.cost_delta or 0),
        duration_ms=record.duration_ms,
        error=record.error,
        is_final=record.is_final,
        created_at=_aware(record.created_at),
        completed_at=_aware(record.completed_at),
    )

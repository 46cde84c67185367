"""
Pipeline persistence with optimistic concurrency

Each pipeline is stored as one JSON document. Writes are compare-and-set
on `version`; payouts are released to their own table in the same
transaction that completes a pipeline.
"""
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from popup_engine.db.models import Payout, PipelineRecord
from popup_engine.errors import ConcurrencyConflict, NotFoundError
from popup_engine.schemas.pipeline import Pipeline

logger = logging.getLogger(__name__)


class PipelineRepository:

    @staticmethod
    def _columns(pipeline: Pipeline) -> dict:
        return {
            "leader_id": pipeline.leader_id,
            "brand_id": pipeline.brand_id,
            "popup_id": pipeline.popup_id,
            "stage": pipeline.stage,
            "version": pipeline.version,
            "document": pipeline.model_dump(mode="json"),
            "updated_at": pipeline.updated_at,
        }

    def create(self, db: Session, pipeline: Pipeline) -> Pipeline:
        db.add(PipelineRecord(
            id=pipeline.id,
            created_at=pipeline.created_at,
            **self._columns(pipeline)
        ))
        db.commit()
        logger.info(f"Pipeline {pipeline.id} created for leader {pipeline.leader_id}")
        return pipeline

    def get(self, db: Session, pipeline_id: str) -> Pipeline:
        record = db.query(PipelineRecord).filter(PipelineRecord.id == pipeline_id).first()
        if not record:
            raise NotFoundError(f"Pipeline not found: {pipeline_id}", {"pipeline_id": pipeline_id})
        return Pipeline.model_validate(record.document)

    def list(
        self,
        db: Session,
        stage: Optional[str] = None,
        leader_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Pipeline]:
        query = db.query(PipelineRecord)
        if stage:
            query = query.filter(PipelineRecord.stage == stage)
        if leader_id:
            query = query.filter(PipelineRecord.leader_id == leader_id)
        query = query.order_by(PipelineRecord.created_at.desc())
        if limit:
            query = query.limit(limit)
        return [Pipeline.model_validate(r.document) for r in query.all()]

    def save(self, db: Session, pipeline: Pipeline, expected_version: int) -> Pipeline:
        """
        Write `pipeline` only if the stored version still equals
        `expected_version`; the saved copy carries the bumped version.
        """
        saved = pipeline.model_copy(update={"version": expected_version + 1})
        updated = db.query(PipelineRecord).filter(
            PipelineRecord.id == pipeline.id,
            PipelineRecord.version == expected_version
        ).update(self._columns(saved), synchronize_session=False)

        if updated == 0:
            db.rollback()
            exists = db.query(PipelineRecord.id).filter(PipelineRecord.id == pipeline.id).first()
            if not exists:
                raise NotFoundError(f"Pipeline not found: {pipeline.id}", {"pipeline_id": pipeline.id})
            logger.warning(f"Version conflict on pipeline {pipeline.id} (expected {expected_version})")
            raise ConcurrencyConflict(
                f"Pipeline {pipeline.id} was modified concurrently",
                {"pipeline_id": pipeline.id, "expected_version": expected_version}
            )

        if saved.stage == "completed":
            self._release_payouts(db, saved)
        db.commit()
        return saved

    @staticmethod
    def _release_payouts(db: Session, pipeline: Pipeline) -> None:
        existing = {
            row.id for row in db.query(Payout.id).filter(Payout.pipeline_id == pipeline.id)
        }
        for payout in pipeline.state.settlement.payouts:
            if payout.id in existing:
                continue
            db.add(Payout(
                id=payout.id,
                pipeline_id=pipeline.id,
                recipient=payout.recipient,
                amount=payout.amount,
                currency=payout.currency,
                scheduled_date=payout.scheduled_date,
                status=payout.status,
                method=payout.method,
                reference=payout.reference
            ))
        logger.info(f"Payouts released for pipeline {pipeline.id}")


pipeline_repository = PipelineRepository()

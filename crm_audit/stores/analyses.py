"""Append-only analysis history."""

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from ..database import AnalysisRecord, Database, as_utc
from ..errors import PersistenceError
from ..models.analysis import Analysis, AnalysisMetadata, PromptType, Transcription

logger = logging.getLogger(__name__)


def _to_analysis(record: AnalysisRecord) -> Analysis:
    return Analysis(
        id=record.id,
        contact_id=record.contact_id,
        contact_name=record.contact_name,
        prompt_id=record.prompt_id,
        prompt_version=record.prompt_version,
        prompt_type=PromptType(record.prompt_type),
        analysis_text=record.analysis_text,
        transcriptions=[Transcription.model_validate(t) for t in record.transcriptions or []],
        metadata=AnalysisMetadata.model_validate(record.run_metadata or {}),
        created_at=as_utc(record.created_at),
    )


class AnalysisStore:
    """Store for analysis results. Records are never updated."""

    def __init__(self, database: Database):
        self.Session = database.Session

    def create(self, analysis: Analysis) -> Analysis:
        try:
            with self.Session.begin() as session:
                session.add(
                    AnalysisRecord(
                        id=analysis.id,
                        contact_id=analysis.contact_id,
                        contact_name=analysis.contact_name,
                        prompt_id=analysis.prompt_id,
                        prompt_version=analysis.prompt_version,
                        prompt_type=analysis.prompt_type.value,
                        analysis_text=analysis.analysis_text,
                        transcriptions=[
                            t.model_dump(by_alias=True, mode="json") for t in analysis.transcriptions
                        ],
                        run_metadata=analysis.metadata.model_dump(by_alias=True, mode="json"),
                        created_at=analysis.created_at,
                    )
                )
        except SQLAlchemyError as e:
            raise PersistenceError("create_analysis", str(e)) from e

        logger.info("Saved analysis %s for contact %s", analysis.id, analysis.contact_id)
        return analysis

    def list_for_contact(self, contact_id: str) -> list[Analysis]:
        """Full history for a contact, newest first."""
        try:
            with self.Session() as session:
                records = session.execute(
                    select(AnalysisRecord)
                    .where(AnalysisRecord.contact_id == contact_id)
                    .order_by(AnalysisRecord.created_at.desc())
                ).scalars()
                return [_to_analysis(record) for record in records]
        except SQLAlchemyError as e:
            raise PersistenceError("list_analyses", str(e)) from e

    def latest_for_contact(self, contact_id: str) -> Analysis | None:
        try:
            with self.Session() as session:
                record = session.execute(
                    select(AnalysisRecord)
                    .where(AnalysisRecord.contact_id == contact_id)
                    .order_by(AnalysisRecord.created_at.desc())
                    .limit(1)
                ).scalar_one_or_none()
                return _to_analysis(record) if record else None
        except SQLAlchemyError as e:
            raise PersistenceError("latest_analysis", str(e)) from e

    def has_analysis(self, contact_id: str) -> bool:
        try:
            with self.Session() as session:
                found = session.execute(
                    select(AnalysisRecord.id).where(AnalysisRecord.contact_id == contact_id).limit(1)
                ).scalar_one_or_none()
                return found is not None
        except SQLAlchemyError as e:
            raise PersistenceError("has_analysis", str(e)) from e

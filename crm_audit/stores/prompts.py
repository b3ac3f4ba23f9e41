"""Versioned prompt storage.

Invariant: at most one prompt per type is active. Every mutation runs in a
single transaction that deactivates before it activates, and the database
backs this up with a partial unique index.
"""

import logging
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..database import Database, PromptRecord, PromptSequenceRecord, as_utc, utcnow
from ..errors import NotFoundError, PersistenceError
from ..models.analysis import Prompt, PromptSettings, PromptType

logger = logging.getLogger(__name__)


def _to_prompt(record: PromptRecord) -> Prompt:
    return Prompt(
        id=record.id,
        version=record.version,
        prompt_type=PromptType(record.prompt_type),
        content=record.content,
        settings=PromptSettings.model_validate(record.settings or {}),
        created_by=record.created_by,
        created_at=as_utc(record.created_at),
        is_active=record.is_active,
    )


class PromptStore:
    """Store for prompt versions."""

    def __init__(self, database: Database):
        self.Session = database.Session

    def _next_version(self, session: Session, prompt_type: str) -> int:
        """Issue the next version for a type. Versions are never reused."""
        sequence = session.execute(
            select(PromptSequenceRecord)
            .where(PromptSequenceRecord.prompt_type == prompt_type)
            .with_for_update()
        ).scalar_one_or_none()
        max_existing = session.scalar(
            select(func.max(PromptRecord.version)).where(PromptRecord.prompt_type == prompt_type)
        ) or 0

        if sequence is None:
            sequence = PromptSequenceRecord(prompt_type=prompt_type, last_version=0)
            session.add(sequence)
        version = max(sequence.last_version, max_existing) + 1
        sequence.last_version = version
        return version

    @staticmethod
    def _deactivate(session: Session, prompt_type: str, except_id: str | None = None) -> None:
        stmt = (
            update(PromptRecord)
            .where(PromptRecord.prompt_type == prompt_type)
            .where(PromptRecord.is_active.is_(True))
        )
        if except_id is not None:
            stmt = stmt.where(PromptRecord.id != except_id)
        session.execute(stmt.values(is_active=False))

    def create(
        self,
        content: str,
        settings: PromptSettings | dict | None = None,
        created_by: str | None = None,
        prompt_type: PromptType | str = PromptType.SETTER,
    ) -> Prompt:
        """Create a new version of a prompt type and make it the active one."""
        prompt_type = PromptType(prompt_type)
        if not isinstance(settings, PromptSettings):
            settings = PromptSettings.model_validate(settings or {})

        try:
            with self.Session.begin() as session:
                version = self._next_version(session, prompt_type.value)
                self._deactivate(session, prompt_type.value)
                record = PromptRecord(
                    id=uuid4().hex,
                    version=version,
                    prompt_type=prompt_type.value,
                    content=content,
                    settings=settings.model_dump(by_alias=True),
                    created_by=created_by,
                    created_at=utcnow(),
                    is_active=True,
                )
                session.add(record)
                session.flush()
                prompt = _to_prompt(record)
        except SQLAlchemyError as e:
            raise PersistenceError("create_prompt", str(e)) from e

        logger.info("Created %s prompt v%d (%s)", prompt_type.value, prompt.version, prompt.id)
        return prompt

    def restore(self, prompt_id: str) -> Prompt:
        """Make an existing prompt version the active one for its type."""
        try:
            with self.Session.begin() as session:
                record = session.get(PromptRecord, prompt_id)
                if record is None:
                    raise NotFoundError("Prompt", prompt_id)
                self._deactivate(session, record.prompt_type, except_id=record.id)
                session.flush()
                record.is_active = True
                session.flush()
                prompt = _to_prompt(record)
        except SQLAlchemyError as e:
            raise PersistenceError("restore_prompt", str(e)) from e

        logger.info("Restored %s prompt v%d (%s)", prompt.prompt_type.value, prompt.version, prompt.id)
        return prompt

    def delete(self, prompt_id: str) -> Prompt | None:
        """Delete a prompt version.

        When the deleted prompt was active, the highest remaining version of the
        same type becomes active.

        Returns:
            The prompt that was activated in its place, if any.
        """
        activated = None
        try:
            with self.Session.begin() as session:
                record = session.get(PromptRecord, prompt_id)
                if record is None:
                    raise NotFoundError("Prompt", prompt_id)
                was_active = record.is_active
                prompt_type = record.prompt_type
                session.delete(record)
                session.flush()

                if was_active:
                    successor = session.execute(
                        select(PromptRecord)
                        .where(PromptRecord.prompt_type == prompt_type)
                        .order_by(PromptRecord.version.desc())
                        .limit(1)
                    ).scalar_one_or_none()
                    if successor is not None:
                        successor.is_active = True
                        session.flush()
                        activated = _to_prompt(successor)
        except SQLAlchemyError as e:
            raise PersistenceError("delete_prompt", str(e)) from e

        logger.info("Deleted prompt %s", prompt_id)
        if activated:
            logger.info(
                "Auto-activated %s prompt v%d (%s)",
                activated.prompt_type.value,
                activated.version,
                activated.id,
            )
        return activated

    def get(self, prompt_id: str) -> Prompt | None:
        try:
            with self.Session() as session:
                record = session.get(PromptRecord, prompt_id)
                return _to_prompt(record) if record else None
        except SQLAlchemyError as e:
            raise PersistenceError("get_prompt", str(e)) from e

    def get_active(self, prompt_type: PromptType | str) -> Prompt | None:
        prompt_type = PromptType(prompt_type)
        try:
            with self.Session() as session:
                record = session.execute(
                    select(PromptRecord)
                    .where(PromptRecord.prompt_type == prompt_type.value)
                    .where(PromptRecord.is_active.is_(True))
                ).scalar_one_or_none()
                return _to_prompt(record) if record else None
        except SQLAlchemyError as e:
            raise PersistenceError("get_active_prompt", str(e)) from e

    def list_history(self, prompt_type: PromptType | str | None = None) -> list[Prompt]:
        """All prompt versions, newest version first."""
        stmt = select(PromptRecord).order_by(PromptRecord.prompt_type, PromptRecord.version.desc())
        if prompt_type is not None:
            stmt = stmt.where(PromptRecord.prompt_type == PromptType(prompt_type).value)
        try:
            with self.Session() as session:
                return [_to_prompt(record) for record in session.execute(stmt).scalars()]
        except SQLAlchemyError as e:
            raise PersistenceError("list_prompts", str(e)) from e

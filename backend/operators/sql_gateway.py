"""
SQL Gateway - PersistenceGateway backed by SQLAlchemy.

Each project is one ProjectRecord row holding the full document as JSON.
Database calls are synchronous and run in a worker thread so they never
block the event loop that drives the store.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from database.base import Base, make_session_factory
from database.models import ProjectRecord
from models.project_models import ProjectDocument, ProjectSummary
from operators.persistence import CURRENT_PROJECT_KEY, PersistenceError, PersistenceGateway

logger = logging.getLogger(__name__)


class SqlProjectGateway(PersistenceGateway):
    def __init__(self, engine: Engine, default_project_id: str = CURRENT_PROJECT_KEY):
        self._engine = engine
        self._session_factory = make_session_factory(engine)
        self._default_project_id = default_project_id
        self._supported: bool | None = None

    def _key(self, project_id: str | None) -> str:
        return project_id or self._default_project_id

    def create_schema(self) -> None:
        Base.metadata.create_all(bind=self._engine)

    def is_supported(self) -> bool:
        """
        Check the database once and remember the answer.

        The first call connects synchronously; make it at startup, before the
        event loop serves requests. Later calls do no I/O.
        """
        if self._supported is None:
            self._supported = self._check_connection()
        return self._supported

    def _check_connection(self) -> bool:
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            logger.warning("Project database unreachable", exc_info=True)
            return False

    # -------------------------------------------------------------------------
    # Load / save
    # -------------------------------------------------------------------------

    async def load(self, project_id: str | None = None) -> ProjectDocument | None:
        return await asyncio.to_thread(self._load, self._key(project_id))

    def _load(self, key: str) -> ProjectDocument | None:
        try:
            with self._session_factory() as db:
                record = db.get(ProjectRecord, key)
                if record is None:
                    logger.info(f"No project found with ID: {key}")
                    return None
                document = ProjectDocument.model_validate(record.project_data)
        except (SQLAlchemyError, ValidationError) as e:
            logger.error(f"Failed to load project {key}: {e}")
            raise PersistenceError("Failed to load project from storage") from e
        logger.info(f"Project '{document.project_settings.name}' loaded successfully")
        return document

    async def save(self, document: ProjectDocument, project_id: str | None = None) -> None:
        await asyncio.to_thread(self._save, document, self._key(project_id))

    def _save(self, document: ProjectDocument, key: str) -> None:
        now = datetime.now(timezone.utc)
        name = document.project_settings.name
        try:
            with self._session_factory() as db:
                record = db.get(ProjectRecord, key)
                if record is None:
                    record = ProjectRecord(project_id=key, created_at=now)
                    db.add(record)
                record.project_name = name
                record.project_data = document.to_wire()
                record.last_modified = now
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to save project {key}: {e}")
            raise PersistenceError("Failed to save project to storage") from e
        logger.info(f"Project '{name}' saved successfully")

    # -------------------------------------------------------------------------
    # Project management
    # -------------------------------------------------------------------------

    async def list_projects(self) -> list[ProjectSummary]:
        return await asyncio.to_thread(self._list_projects)

    def _list_projects(self) -> list[ProjectSummary]:
        with self._session_factory() as db:
            records = (
                db.query(ProjectRecord)
                .order_by(ProjectRecord.last_modified.desc())
                .all()
            )
            return [
                ProjectSummary(
                    project_id=r.project_id,
                    project_name=r.project_name,
                    last_modified=r.last_modified,
                    created_at=r.created_at,
                )
                for r in records
            ]

    async def delete_project(self, project_id: str) -> bool:
        return await asyncio.to_thread(self._delete_project, project_id)

    def _delete_project(self, project_id: str) -> bool:
        with self._session_factory() as db:
            record = db.get(ProjectRecord, project_id)
            if record is None:
                return False
            db.delete(record)
            db.commit()
        logger.info(f"Project with ID '{project_id}' deleted")
        return True

    async def clear_all_projects(self) -> int:
        return await asyncio.to_thread(self._clear_all_projects)

    def _clear_all_projects(self) -> int:
        with self._session_factory() as db:
            count = db.query(ProjectRecord).delete()
            db.commit()
        logger.info(f"Cleared {count} project(s) from storage")
        return count

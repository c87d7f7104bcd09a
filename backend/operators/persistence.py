"""
Persistence - gateway contract, debounced auto-save and startup restore.

The store never talks to storage directly. It is wired to a
PersistenceGateway through:
- ``initialize_persistence``: awaits the startup load, applies it, and only
  then arms auto-save, so a blank default document can never overwrite a
  saved project
- ``AutoSaver``: trailing-edge debounce of full-document saves; each change
  restarts the timer and a burst of edits produces one save
- ``save_project`` / ``restore_project``: explicit save and load

Gateway failures are logged and never change the in-memory document. The
core does not retry a failed save.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

from models.project_models import ProjectDocument, ProjectSummary
from operators.history_manager import HistoryManager
from operators.project_store import ProjectStore

logger = logging.getLogger(__name__)

CURRENT_PROJECT_KEY = "current-project"
DEFAULT_SAVE_DEBOUNCE_MS = 500


class PersistenceError(Exception):
    """Raised when saving or loading a project fails."""
    pass


# =============================================================================
# GATEWAY CONTRACT
# =============================================================================


class PersistenceGateway(ABC):
    """
    Durable storage for whole project documents.

    ``save`` always receives a complete snapshot, so writes are
    last-write-wins and need no read-modify-write.
    """

    @abstractmethod
    def is_supported(self) -> bool:
        """Capability check. When False, persistence is skipped entirely."""
        raise NotImplementedError

    @abstractmethod
    async def load(self, project_id: str | None = None) -> ProjectDocument | None:
        """Load a saved document, or None if there is none."""
        raise NotImplementedError

    @abstractmethod
    async def save(self, document: ProjectDocument, project_id: str | None = None) -> None:
        raise NotImplementedError

    # Optional capabilities. A gateway that stores a single document can leave
    # these out; callers treat NotImplementedError as "not available".

    async def list_projects(self) -> list[ProjectSummary]:
        """Saved projects, most recently modified first."""
        raise NotImplementedError(f"{type(self).__name__} cannot list projects")

    async def delete_project(self, project_id: str) -> bool:
        """Delete one saved project. Returns False if it did not exist."""
        raise NotImplementedError(f"{type(self).__name__} cannot delete projects")

    async def clear_all_projects(self) -> int:
        """Delete every saved project. Returns how many were removed."""
        raise NotImplementedError(f"{type(self).__name__} cannot clear projects")


# =============================================================================
# AUTO-SAVE
# =============================================================================


class AutoSaver:
    """
    Debounced auto-save for one store.

    Must be created and used on the event loop thread that runs the store's
    commands.
    """

    def __init__(
        self,
        store: ProjectStore,
        gateway: PersistenceGateway,
        project_id: str | None = None,
        delay_ms: int = DEFAULT_SAVE_DEBOUNCE_MS,
    ):
        self._store = store
        self._gateway = gateway
        self._project_id = project_id
        self._delay = delay_ms / 1000
        self._loop = asyncio.get_running_loop()
        self._timer: asyncio.TimerHandle | None = None
        self._pending: ProjectDocument | None = None
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe = None

    @property
    def armed(self) -> bool:
        return self._unsubscribe is not None

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._store.subscribe(self._on_change)

    def _on_change(self, state: ProjectDocument, previous: ProjectDocument) -> None:
        self._pending = state
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._loop.call_later(self._delay, self._fire)

    def _fire(self) -> None:
        self._timer = None
        document, self._pending = self._pending, None
        if document is None:
            return
        task = self._loop.create_task(self._save(document))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _save(self, document: ProjectDocument) -> None:
        try:
            await self._gateway.save(document.model_copy(deep=True), self._project_id)
            logger.debug(f"Auto-saved project '{document.project_settings.name}'")
        except Exception:
            logger.exception("Auto-save failed")

    async def flush(self) -> None:
        """Save a pending change now instead of waiting for the timer."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        document, self._pending = self._pending, None
        if document is not None:
            await self._save(document)
        await self.drain()

    async def drain(self) -> None:
        """Wait for saves that are already in flight."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))

    def close(self) -> None:
        """Stop listening and drop any pending save."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None


# =============================================================================
# STARTUP / EXPLICIT SAVE & RESTORE
# =============================================================================


async def initialize_persistence(
    store: ProjectStore,
    gateway: PersistenceGateway,
    history: HistoryManager | None = None,
    project_id: str | None = None,
    delay_ms: int = DEFAULT_SAVE_DEBOUNCE_MS,
) -> AutoSaver | None:
    """
    Restore the last saved project, then arm auto-save.

    Returns the armed AutoSaver, or None when the gateway is unsupported or
    the startup load failed. After a failed load the document stays at its
    default and nothing is saved automatically.
    """
    if not gateway.is_supported():
        logger.warning("Persistence not supported, skipping auto-save")
        return None

    try:
        document = await gateway.load(project_id)
    except Exception:
        logger.exception("Failed to initialize persistence")
        return None

    if document is not None:
        store.load_project(document)
        if history is not None:
            history.clear()
        logger.info("Project restored from storage")

    saver = AutoSaver(store, gateway, project_id=project_id, delay_ms=delay_ms)
    saver.start()
    logger.info("Auto-save initialized")
    return saver


async def save_project(
    store: ProjectStore,
    gateway: PersistenceGateway,
    project_id: str | None = None,
) -> None:
    """Save the current document now. Raises PersistenceError on failure."""
    if not gateway.is_supported():
        raise PersistenceError("Persistence is not supported")
    try:
        await gateway.save(store.state.model_copy(deep=True), project_id)
    except PersistenceError:
        raise
    except Exception as e:
        logger.exception("Manual save failed")
        raise PersistenceError(f"Failed to save project: {e}") from e
    logger.info("Project saved manually")


async def restore_project(
    store: ProjectStore,
    gateway: PersistenceGateway,
    project_id: str | None = None,
) -> bool:
    """Load a saved project into the store. Returns False if nothing was loaded."""
    if not gateway.is_supported():
        return False
    try:
        document = await gateway.load(project_id)
    except Exception:
        logger.exception("Failed to restore project")
        return False
    if document is None:
        return False
    store.load_project(document)
    logger.info("Project restored successfully")
    return True

from dataclasses import dataclass

from fastapi import HTTPException, Request

from operators.history_manager import HistoryManager
from operators.persistence import AutoSaver, PersistenceGateway
from operators.project_store import ProjectStore


@dataclass
class EditorSession:
    store: ProjectStore
    history: HistoryManager
    gateway: PersistenceGateway
    autosaver: AutoSaver | None = None
    project_id: str | None = None

    def close(self) -> None:
        if self.autosaver is not None:
            self.autosaver.close()
        self.history.close()
        self.store.unsubscribe_all()


def get_editor(request: Request) -> EditorSession:
    editor = getattr(request.app.state, "editor", None)
    if editor is None:
        raise HTTPException(status_code=503, detail="Editor not initialized")
    return editor

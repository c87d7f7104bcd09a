import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

ROOT_DIR = Path(__file__).resolve().parents[1]
load_dotenv(ROOT_DIR / ".env")

from database.base import engine  # noqa: E402
from dependencies.editor import EditorSession  # noqa: E402
from handlers.project_handler import router as project_router  # noqa: E402
from operators.history_manager import DEFAULT_HISTORY_LIMIT, HistoryManager  # noqa: E402
from operators.persistence import (  # noqa: E402
    CURRENT_PROJECT_KEY,
    DEFAULT_SAVE_DEBOUNCE_MS,
    initialize_persistence,
)
from operators.project_store import ProjectStore  # noqa: E402
from operators.sql_gateway import SqlProjectGateway  # noqa: E402

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

AUTOSAVE_DEBOUNCE_MS = int(os.getenv("AUTOSAVE_DEBOUNCE_MS", str(DEFAULT_SAVE_DEBOUNCE_MS)))
HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", str(DEFAULT_HISTORY_LIMIT)))
PROJECT_ID = os.getenv("PROJECT_ID", CURRENT_PROJECT_KEY).strip() or CURRENT_PROJECT_KEY
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS", "http://localhost:3000,http://localhost:5173"
    ).split(",")
    if origin.strip()
]


def _attach_file_handler(
    logger_name: str,
    log_file_path: Path,
    level_name: str | None = None,
) -> None:
    logger_level = (level_name or LOG_LEVEL).upper()
    logger_level_value = getattr(logging, logger_level, logging.INFO)

    log_file_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
    file_handler.setLevel(logger_level_value)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    )

    target_logger = logging.getLogger(logger_name)
    if not any(
        isinstance(handler, logging.FileHandler)
        and getattr(handler, "baseFilename", None) == str(log_file_path)
        for handler in target_logger.handlers
    ):
        target_logger.addHandler(file_handler)
    target_logger.setLevel(logger_level_value)


STORE_LOG_FILE = os.getenv("STORE_LOG_FILE", "").strip()
STORE_LOG_LEVEL = os.getenv("STORE_LOG_LEVEL", "").strip() or None
if STORE_LOG_FILE:
    store_log_path = Path(STORE_LOG_FILE)
    if not store_log_path.is_absolute():
        store_log_path = ROOT_DIR / store_log_path
    _attach_file_handler("operators", store_log_path, level_name=STORE_LOG_LEVEL)
    _attach_file_handler("handlers", store_log_path, level_name=STORE_LOG_LEVEL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = ProjectStore()
    history = HistoryManager(store, limit=HISTORY_LIMIT)
    gateway = SqlProjectGateway(engine, default_project_id=PROJECT_ID)
    if gateway.is_supported():
        gateway.create_schema()

    autosaver = await initialize_persistence(
        store,
        gateway,
        history=history,
        project_id=PROJECT_ID,
        delay_ms=AUTOSAVE_DEBOUNCE_MS,
    )
    app.state.editor = EditorSession(
        store=store,
        history=history,
        gateway=gateway,
        autosaver=autosaver,
        project_id=PROJECT_ID,
    )
    logger.info(f"Editor ready (project={PROJECT_ID}, history limit={HISTORY_LIMIT})")
    try:
        yield
    finally:
        if autosaver is not None:
            await autosaver.flush()
        app.state.editor.close()
        app.state.editor = None


app = FastAPI(title="Timeline Editor Core", lifespan=lifespan)

app.include_router(project_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)

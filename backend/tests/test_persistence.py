import asyncio
import logging
from datetime import datetime, timezone

import pytest

from database.base import make_engine
from database.models import ProjectRecord
from models.project_models import Asset, ProjectDocument
from operators.history_manager import HistoryManager
from operators.persistence import (
    AutoSaver,
    PersistenceError,
    PersistenceGateway,
    initialize_persistence,
    restore_project,
    save_project,
)
from operators.project_store import ProjectStore
from operators.sql_gateway import SqlProjectGateway

DELAY_MS = 40


def _asset(asset_id="asset-1"):
    return Asset(asset_id=asset_id, file_name=f"{asset_id}.mp4", type="video", duration=4.0)


def _saved_document(name="Saved Project"):
    document = ProjectDocument.default()
    document.project_settings.name = name
    document.asset_library.append(_asset("saved"))
    return document


class _FakeGateway(PersistenceGateway):
    def __init__(self, supported=True, stored=None, fail_load=False, fail_save=False):
        self.supported = supported
        self.stored = stored
        self.fail_load = fail_load
        self.fail_save = fail_save
        self.load_calls = 0
        self.saved = []

    def is_supported(self):
        return self.supported

    async def load(self, project_id=None):
        self.load_calls += 1
        if self.fail_load:
            raise RuntimeError("storage offline")
        return self.stored

    async def save(self, document, project_id=None):
        if self.fail_save:
            raise RuntimeError("disk full")
        self.saved.append((document, project_id))


async def _wait_for_debounce():
    await asyncio.sleep(DELAY_MS / 1000 * 3)


class TestAutoSaver:
    @pytest.mark.asyncio
    async def test_burst_of_edits_saves_once(self):
        store = ProjectStore()
        gateway = _FakeGateway()
        saver = AutoSaver(store, gateway, project_id="p1", delay_ms=DELAY_MS)
        saver.start()

        for i in range(5):
            store.add_asset(_asset(f"a{i}"))
        assert gateway.saved == []
        assert saver.has_pending

        await _wait_for_debounce()

        assert len(gateway.saved) == 1
        document, project_id = gateway.saved[0]
        assert project_id == "p1"
        assert document == store.state
        assert saver.has_pending is False

    @pytest.mark.asyncio
    async def test_each_change_restarts_timer(self):
        store = ProjectStore()
        gateway = _FakeGateway()
        saver = AutoSaver(store, gateway, delay_ms=100)
        saver.start()

        store.add_asset(_asset("a1"))
        await asyncio.sleep(0.06)
        store.add_asset(_asset("a2"))
        await asyncio.sleep(0.06)

        assert gateway.saved == []

        await asyncio.sleep(0.15)

        assert len(gateway.saved) == 1
        assert len(gateway.saved[0][0].asset_library) == 2

    @pytest.mark.asyncio
    async def test_saved_snapshot_is_detached(self):
        store = ProjectStore()
        gateway = _FakeGateway()
        saver = AutoSaver(store, gateway, delay_ms=DELAY_MS)
        saver.start()

        store.add_asset(_asset("a1"))
        await _wait_for_debounce()
        store.add_asset(_asset("a2"))

        document, _ = gateway.saved[0]
        assert document is not store.state
        assert [a.asset_id for a in document.asset_library] == ["a1"]
        saver.close()

    @pytest.mark.asyncio
    async def test_view_changes_are_saved(self):
        store = ProjectStore()
        gateway = _FakeGateway()
        saver = AutoSaver(store, gateway, delay_ms=DELAY_MS)
        saver.start()

        store.set_timeline_scale(90)
        await _wait_for_debounce()

        assert gateway.saved[0][0].timeline_scale == 90

    @pytest.mark.asyncio
    async def test_failed_save_is_logged(self, caplog):
        store = ProjectStore()
        gateway = _FakeGateway(fail_save=True)
        saver = AutoSaver(store, gateway, delay_ms=DELAY_MS)
        saver.start()

        with caplog.at_level(logging.ERROR, logger="operators.persistence"):
            store.add_asset(_asset())
            await _wait_for_debounce()

        assert "Auto-save failed" in caplog.text
        assert len(store.state.asset_library) == 1

    @pytest.mark.asyncio
    async def test_flush_saves_immediately(self):
        store = ProjectStore()
        gateway = _FakeGateway()
        saver = AutoSaver(store, gateway, delay_ms=10_000)
        saver.start()

        store.add_asset(_asset())
        await saver.flush()

        assert len(gateway.saved) == 1
        assert saver.has_pending is False

    @pytest.mark.asyncio
    async def test_flush_without_changes(self):
        gateway = _FakeGateway()
        saver = AutoSaver(ProjectStore(), gateway, delay_ms=DELAY_MS)
        saver.start()

        await saver.flush()

        assert gateway.saved == []

    @pytest.mark.asyncio
    async def test_close_drops_pending_save(self):
        store = ProjectStore()
        gateway = _FakeGateway()
        saver = AutoSaver(store, gateway, delay_ms=DELAY_MS)
        saver.start()

        store.add_asset(_asset())
        saver.close()
        store.add_asset(_asset("a2"))
        await _wait_for_debounce()

        assert gateway.saved == []
        assert saver.armed is False


class TestInitializePersistence:
    @pytest.mark.asyncio
    async def test_unsupported_gateway_skips_everything(self):
        store = ProjectStore()
        gateway = _FakeGateway(supported=False)

        saver = await initialize_persistence(store, gateway, delay_ms=DELAY_MS)
        store.add_asset(_asset())
        await _wait_for_debounce()

        assert saver is None
        assert gateway.load_calls == 0
        assert gateway.saved == []

    @pytest.mark.asyncio
    async def test_restores_saved_document(self):
        store = ProjectStore()
        history = HistoryManager(store)
        gateway = _FakeGateway(stored=_saved_document())

        saver = await initialize_persistence(store, gateway, history=history, delay_ms=DELAY_MS)

        assert saver.armed
        assert store.state.project_settings.name == "Saved Project"
        assert history.can_undo is False

    @pytest.mark.asyncio
    async def test_restore_is_not_saved_back(self):
        store = ProjectStore()
        gateway = _FakeGateway(stored=_saved_document())

        await initialize_persistence(store, gateway, delay_ms=DELAY_MS)
        await _wait_for_debounce()

        assert gateway.saved == []

    @pytest.mark.asyncio
    async def test_edits_after_restore_are_saved(self):
        store = ProjectStore()
        gateway = _FakeGateway(stored=_saved_document())

        await initialize_persistence(store, gateway, project_id="p9", delay_ms=DELAY_MS)
        store.add_asset(_asset("new"))
        await _wait_for_debounce()

        document, project_id = gateway.saved[-1]
        assert project_id == "p9"
        assert [a.asset_id for a in document.asset_library] == ["saved", "new"]

    @pytest.mark.asyncio
    async def test_nothing_stored_keeps_default(self):
        store = ProjectStore()
        gateway = _FakeGateway()

        saver = await initialize_persistence(store, gateway, delay_ms=DELAY_MS)
        await _wait_for_debounce()

        assert saver.armed
        assert store.state == ProjectDocument.default()
        assert gateway.saved == []

    @pytest.mark.asyncio
    async def test_failed_load_disables_autosave(self, caplog):
        store = ProjectStore()
        gateway = _FakeGateway(fail_load=True)

        with caplog.at_level(logging.ERROR, logger="operators.persistence"):
            saver = await initialize_persistence(store, gateway, delay_ms=DELAY_MS)
        store.add_asset(_asset())
        await _wait_for_debounce()

        assert saver is None
        assert "Failed to initialize persistence" in caplog.text
        assert gateway.saved == []

    @pytest.mark.asyncio
    async def test_edits_before_load_finish_are_replaced(self):
        store = ProjectStore()
        loaded = asyncio.Event()

        class _SlowGateway(_FakeGateway):
            async def load(self, project_id=None):
                await loaded.wait()
                return await super().load(project_id)

        gateway = _SlowGateway(stored=_saved_document())
        startup = asyncio.create_task(
            initialize_persistence(store, gateway, delay_ms=DELAY_MS)
        )
        await asyncio.sleep(0)
        store.add_asset(_asset("early"))
        await asyncio.sleep(DELAY_MS / 1000 * 2)
        assert gateway.saved == []

        loaded.set()
        await startup

        assert [a.asset_id for a in store.state.asset_library] == ["saved"]
        assert gateway.saved == []


class TestExplicitSaveAndRestore:
    @pytest.mark.asyncio
    async def test_save_project(self):
        store = ProjectStore()
        store.add_asset(_asset())
        gateway = _FakeGateway()

        await save_project(store, gateway, "manual")

        document, project_id = gateway.saved[0]
        assert project_id == "manual"
        assert document == store.state

    @pytest.mark.asyncio
    async def test_save_project_unsupported(self):
        with pytest.raises(PersistenceError):
            await save_project(ProjectStore(), _FakeGateway(supported=False))

    @pytest.mark.asyncio
    async def test_save_project_failure(self):
        with pytest.raises(PersistenceError):
            await save_project(ProjectStore(), _FakeGateway(fail_save=True))

    @pytest.mark.asyncio
    async def test_restore_project(self):
        store = ProjectStore()

        restored = await restore_project(store, _FakeGateway(stored=_saved_document("Old cut")))

        assert restored is True
        assert store.state.project_settings.name == "Old cut"

    @pytest.mark.asyncio
    async def test_restore_nothing_stored(self):
        store = ProjectStore()
        before = store.state

        assert await restore_project(store, _FakeGateway()) is False
        assert await restore_project(store, _FakeGateway(fail_load=True)) is False
        assert await restore_project(store, _FakeGateway(supported=False)) is False
        assert store.state is before


class TestOptionalCapabilities:
    @pytest.mark.asyncio
    async def test_single_document_gateway_lacks_listing(self):
        gateway = _FakeGateway()

        with pytest.raises(NotImplementedError, match="_FakeGateway cannot list projects"):
            await gateway.list_projects()
        with pytest.raises(NotImplementedError, match="_FakeGateway cannot delete projects"):
            await gateway.delete_project("current")
        with pytest.raises(NotImplementedError, match="_FakeGateway cannot clear projects"):
            await gateway.clear_all_projects()


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'projects.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def sql_gateway(engine):
    gateway = SqlProjectGateway(engine, default_project_id="current")
    gateway.create_schema()
    return gateway


class TestSqlProjectGateway:
    def test_is_supported(self, sql_gateway):
        assert sql_gateway.is_supported() is True

    def test_unreachable_database(self, tmp_path):
        engine = make_engine(f"sqlite:///{tmp_path / 'missing' / 'dir' / 'projects.db'}")

        assert SqlProjectGateway(engine).is_supported() is False

    def test_support_is_checked_once(self, sql_gateway, monkeypatch):
        assert sql_gateway.is_supported() is True

        def _refuse():
            raise AssertionError("connected again")

        monkeypatch.setattr(sql_gateway, "_check_connection", _refuse)

        assert sql_gateway.is_supported() is True
        assert sql_gateway.is_supported() is True

    @pytest.mark.asyncio
    async def test_load_missing_project(self, sql_gateway):
        assert await sql_gateway.load() is None

    @pytest.mark.asyncio
    async def test_save_and_load(self, sql_gateway):
        store = ProjectStore()
        clip_id = store.add_clip_to_timeline(_asset(), 1.5, track_type="audio", track_index=1)
        store.update_clip_properties(clip_id, {
            "animation": {
                "startRect": {"x": 0, "y": 0, "scale": 1},
                "endRect": {"x": 0.1, "y": 0.1, "scale": 1.2},
            },
        })
        store.set_selected_clip_id(clip_id)

        await sql_gateway.save(store.state)
        loaded = await sql_gateway.load()

        assert loaded == store.state

    @pytest.mark.asyncio
    async def test_stores_camel_case_json(self, sql_gateway):
        await sql_gateway.save(_saved_document(), "p1")

        with sql_gateway._session_factory() as db:
            record = db.get(ProjectRecord, "p1")
            assert record.project_name == "Saved Project"
            assert "assetLibrary" in record.project_data
            assert record.project_data["timeline"]["videoTracks"] == [[]]

    @pytest.mark.asyncio
    async def test_resave_keeps_created_at(self, sql_gateway):
        await sql_gateway.save(_saved_document("First"), "p1")
        [first] = await sql_gateway.list_projects()

        await sql_gateway.save(_saved_document("Second"), "p1")
        [second] = await sql_gateway.list_projects()

        assert second.project_name == "Second"
        assert second.created_at == first.created_at
        assert second.last_modified >= first.last_modified

    @pytest.mark.asyncio
    async def test_list_newest_first(self, sql_gateway):
        await sql_gateway.save(_saved_document("Older"), "older")
        await sql_gateway.save(_saved_document("Newer"), "newer")

        projects = await sql_gateway.list_projects()

        assert [p.project_id for p in projects] == ["newer", "older"]

    @pytest.mark.asyncio
    async def test_delete_project(self, sql_gateway):
        await sql_gateway.save(_saved_document(), "p1")

        assert await sql_gateway.delete_project("p1") is True
        assert await sql_gateway.delete_project("p1") is False
        assert await sql_gateway.load("p1") is None

    @pytest.mark.asyncio
    async def test_clear_all_projects(self, sql_gateway):
        for project_id in ("a", "b", "c"):
            await sql_gateway.save(_saved_document(), project_id)

        assert await sql_gateway.clear_all_projects() == 3
        assert await sql_gateway.list_projects() == []

    @pytest.mark.asyncio
    async def test_corrupt_record_raises(self, sql_gateway):
        with sql_gateway._session_factory() as db:
            db.add(ProjectRecord(
                project_id="broken",
                project_name="Broken",
                project_data={"timeline": {"videoTracks": "not a list"}},
                last_modified=datetime.now(timezone.utc),
                created_at=datetime.now(timezone.utc),
            ))
            db.commit()

        with pytest.raises(PersistenceError):
            await sql_gateway.load("broken")

    @pytest.mark.asyncio
    async def test_startup_round_trip(self, sql_gateway):
        first = ProjectStore()
        saver = await initialize_persistence(first, sql_gateway, delay_ms=DELAY_MS)
        first.add_asset(_asset("persisted"))
        await saver.flush()
        saver.close()

        second = ProjectStore()
        history = HistoryManager(second)
        await initialize_persistence(second, sql_gateway, history=history, delay_ms=DELAY_MS)

        assert [a.asset_id for a in second.state.asset_library] == ["persisted"]
        assert history.can_undo is False

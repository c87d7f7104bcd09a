"""
Project Handler - REST API endpoints for the editor's project document.

Every mutating endpoint maps to one store command and returns the full
document together with the undo/redo status. Commands are safe to call
speculatively: an unknown clip or asset id leaves the document unchanged
and still returns 200.

Several commands can be sent to ``POST /project/batch``; they are applied
as one change and undone as one step.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Path, Query

from dependencies.editor import EditorSession, get_editor
from models.project_models import (
    AddClipRequest,
    Asset,
    AssetPatch,
    BatchRequest,
    ClipPatch,
    MoveSelectionRequest,
    PlaybackRequest,
    ProjectDocument,
    ProjectListResponse,
    ProjectResponse,
    RestoreRequest,
    SelectionMode,
    SelectionRequest,
    SplitClipRequest,
)
from operators.persistence import PersistenceError, restore_project, save_project
from operators.project_store import ProjectStoreError


router = APIRouter(prefix="/project", tags=["project"])
logger = logging.getLogger(__name__)

BATCH_COMMANDS = frozenset({
    "add_asset",
    "update_asset",
    "remove_asset",
    "add_clip_to_timeline",
    "update_clip_properties",
    "remove_clip",
    "split_clip",
    "set_selected_clip_id",
    "set_selected_clip_ids",
    "add_to_selection",
    "remove_from_selection",
    "toggle_selection",
    "clear_selection",
    "set_current_time",
    "set_playing",
    "set_timeline_scale",
    "delete_selected_clips",
    "move_selected_clips",
    "update_selected_clips_properties",
    "load_project",
    "reset_project",
})


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


def project_response(editor: EditorSession) -> ProjectResponse:
    return ProjectResponse(
        ok=True,
        project=editor.store.state,
        history=editor.history.status(),
    )


def handle_project_error(e: Exception):
    """Convert store and persistence exceptions to HTTP exceptions."""
    if isinstance(e, PersistenceError):
        raise HTTPException(status_code=503, detail=str(e))
    elif isinstance(e, ProjectStoreError):
        raise HTTPException(status_code=409, detail=str(e))
    elif isinstance(e, (TypeError, ValueError)):
        raise HTTPException(status_code=400, detail=str(e))
    else:
        raise HTTPException(status_code=500, detail=f"Internal error: {str(e)}")


# =============================================================================
# DOCUMENT
# =============================================================================


@router.get("", response_model=ProjectResponse)
async def project_get(editor: EditorSession = Depends(get_editor)):
    return project_response(editor)


@router.put("", response_model=ProjectResponse)
async def project_load(
    document: ProjectDocument,
    editor: EditorSession = Depends(get_editor),
):
    """Replace the whole document (one undo step)."""
    editor.store.load_project(document)
    return project_response(editor)


@router.post("/reset", response_model=ProjectResponse)
async def project_reset(editor: EditorSession = Depends(get_editor)):
    editor.store.reset_project()
    return project_response(editor)


@router.post("/batch", response_model=ProjectResponse)
async def project_batch(
    request: BatchRequest,
    editor: EditorSession = Depends(get_editor),
):
    """
    Apply several store commands as one change.

    Body: {"commands": [{"op": "add_asset", "args": {"asset": {...}}}, ...]}
    Arguments use the command's Python parameter names. If any command
    fails, none of them are applied.
    """
    unknown = [c.op for c in request.commands if c.op not in BATCH_COMMANDS]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown command(s): {', '.join(unknown)}")

    try:
        with editor.store.batch():
            for command in request.commands:
                getattr(editor.store, command.op)(**command.args)
    except (TypeError, ValueError) as e:
        logger.info(f"Rejected batch of {len(request.commands)} command(s): {e}")
        handle_project_error(e)
    return project_response(editor)


# =============================================================================
# ASSETS
# =============================================================================


@router.post("/assets", response_model=ProjectResponse)
async def asset_add(asset: Asset, editor: EditorSession = Depends(get_editor)):
    editor.store.add_asset(asset)
    return project_response(editor)


@router.patch("/assets/{asset_id}", response_model=ProjectResponse)
async def asset_update(
    patch: AssetPatch,
    asset_id: str = Path(..., description="Asset to update"),
    editor: EditorSession = Depends(get_editor),
):
    editor.store.update_asset(asset_id, patch)
    return project_response(editor)


@router.delete("/assets/{asset_id}", response_model=ProjectResponse)
async def asset_remove(
    asset_id: str = Path(..., description="Asset to remove"),
    editor: EditorSession = Depends(get_editor),
):
    """Remove an asset from the library. Clips that use it are kept."""
    editor.store.remove_asset(asset_id)
    return project_response(editor)


# =============================================================================
# CLIPS
# =============================================================================


@router.post("/clips", response_model=ProjectResponse)
async def clip_add(
    request: AddClipRequest,
    editor: EditorSession = Depends(get_editor),
):
    asset = editor.store.find_asset(request.asset_id)
    if asset is None:
        raise HTTPException(status_code=404, detail=f"Asset not found: {request.asset_id}")
    editor.store.add_clip_to_timeline(
        asset,
        request.start_time,
        track_type=request.track_type,
        track_index=request.track_index,
    )
    return project_response(editor)


@router.patch("/clips/{clip_id}", response_model=ProjectResponse)
async def clip_update(
    patch: ClipPatch,
    clip_id: str = Path(..., description="Clip to update"),
    editor: EditorSession = Depends(get_editor),
):
    editor.store.update_clip_properties(clip_id, patch)
    return project_response(editor)


@router.delete("/clips/{clip_id}", response_model=ProjectResponse)
async def clip_remove(
    clip_id: str = Path(..., description="Clip to remove"),
    editor: EditorSession = Depends(get_editor),
):
    editor.store.remove_clip(clip_id)
    return project_response(editor)


@router.post("/clips/{clip_id}/split", response_model=ProjectResponse)
async def clip_split(
    request: SplitClipRequest,
    clip_id: str = Path(..., description="Clip to split"),
    editor: EditorSession = Depends(get_editor),
):
    editor.store.split_clip(clip_id, request.split_time)
    return project_response(editor)


# =============================================================================
# SELECTION
# =============================================================================


@router.put("/selection", response_model=ProjectResponse)
async def selection_set(
    request: SelectionRequest,
    editor: EditorSession = Depends(get_editor),
):
    editor.store.set_selected_clip_ids(request.clip_ids)
    return project_response(editor)


@router.delete("/selection", response_model=ProjectResponse)
async def selection_clear(editor: EditorSession = Depends(get_editor)):
    editor.store.clear_selection()
    return project_response(editor)


@router.post("/selection/items/{clip_id}", response_model=ProjectResponse)
async def selection_item(
    clip_id: str = Path(..., description="Clip to add, remove or toggle"),
    mode: SelectionMode = Query(default=SelectionMode.TOGGLE),
    editor: EditorSession = Depends(get_editor),
):
    if mode == SelectionMode.ADD:
        editor.store.add_to_selection(clip_id)
    elif mode == SelectionMode.REMOVE:
        editor.store.remove_from_selection(clip_id)
    else:
        editor.store.toggle_selection(clip_id)
    return project_response(editor)


@router.post("/selection/delete", response_model=ProjectResponse)
async def selection_delete(editor: EditorSession = Depends(get_editor)):
    editor.store.delete_selected_clips()
    return project_response(editor)


@router.post("/selection/move", response_model=ProjectResponse)
async def selection_move(
    request: MoveSelectionRequest,
    editor: EditorSession = Depends(get_editor),
):
    editor.store.move_selected_clips(request.delta)
    return project_response(editor)


@router.patch("/selection/properties", response_model=ProjectResponse)
async def selection_update(
    patch: ClipPatch,
    editor: EditorSession = Depends(get_editor),
):
    editor.store.update_selected_clips_properties(patch)
    return project_response(editor)


# =============================================================================
# PLAYBACK & ZOOM
# =============================================================================


@router.put("/playback", response_model=ProjectResponse)
async def playback_update(
    request: PlaybackRequest,
    editor: EditorSession = Depends(get_editor),
):
    with editor.store.batch():
        if request.current_time is not None:
            editor.store.set_current_time(request.current_time)
        if request.is_playing is not None:
            editor.store.set_playing(request.is_playing)
        if request.timeline_scale is not None:
            editor.store.set_timeline_scale(request.timeline_scale)
    return project_response(editor)


# =============================================================================
# HISTORY
# =============================================================================


@router.get("/history", response_model=ProjectResponse)
async def history_get(editor: EditorSession = Depends(get_editor)):
    return project_response(editor)


@router.post("/history/undo", response_model=ProjectResponse)
async def history_undo(editor: EditorSession = Depends(get_editor)):
    try:
        editor.history.undo()
    except ProjectStoreError as e:
        handle_project_error(e)
    return project_response(editor)


@router.post("/history/redo", response_model=ProjectResponse)
async def history_redo(editor: EditorSession = Depends(get_editor)):
    try:
        editor.history.redo()
    except ProjectStoreError as e:
        handle_project_error(e)
    return project_response(editor)


@router.delete("/history", response_model=ProjectResponse)
async def history_clear(editor: EditorSession = Depends(get_editor)):
    editor.history.clear()
    return project_response(editor)


# =============================================================================
# PERSISTENCE
# =============================================================================


@router.post("/save", response_model=ProjectResponse)
async def project_save(editor: EditorSession = Depends(get_editor)):
    try:
        await save_project(editor.store, editor.gateway, editor.project_id)
    except PersistenceError as e:
        handle_project_error(e)
    return project_response(editor)


@router.post("/restore", response_model=ProjectResponse)
async def project_restore(
    request: RestoreRequest,
    editor: EditorSession = Depends(get_editor),
):
    project_id = request.project_id or editor.project_id
    restored = await restore_project(editor.store, editor.gateway, project_id)
    if not restored:
        raise HTTPException(status_code=404, detail="No saved project found")
    return project_response(editor)


@router.get("/saved", response_model=ProjectListResponse)
async def saved_list(editor: EditorSession = Depends(get_editor)):
    try:
        projects = await editor.gateway.list_projects()
    except Exception as e:
        logger.exception("Failed to list saved projects")
        handle_project_error(PersistenceError(str(e)))
    return ProjectListResponse(ok=True, projects=projects)


@router.delete("/saved/{project_id}")
async def saved_delete(
    project_id: str = Path(..., description="Saved project to delete"),
    editor: EditorSession = Depends(get_editor),
):
    try:
        deleted = await editor.gateway.delete_project(project_id)
    except Exception as e:
        logger.exception(f"Failed to delete saved project {project_id}")
        handle_project_error(PersistenceError(str(e)))
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Saved project not found: {project_id}")
    return {"ok": True}

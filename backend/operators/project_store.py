"""
Project Store - the in-memory project document and its mutation commands.

The store owns one ProjectDocument and replaces it on every command:
- Commands never raise for ordinary misuse; an unknown id or an
  out-of-range time is a no-op. Arguments of the wrong type are rejected
  with a pydantic ValidationError before anything changes
- A command that leaves the document unchanged notifies nobody
- Observers subscribe with ``subscribe(listener)`` and receive
  ``(state, previous)`` after every committed change
- ``batch()`` groups several commands into one change notification,
  which the history manager records as a single undo step

Published documents are never mutated in place. Commands edit a deep copy
and swap it in, so observers may keep references to old states.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, ValidationError, validate_call

from models.project_models import (
    DEFAULT_CLIP_DURATION,
    MAX_TIMELINE_SCALE,
    MIN_TIMELINE_SCALE,
    Asset,
    AssetPatch,
    Clip,
    ClipLocation,
    ClipPatch,
    ProjectDocument,
    TrackedState,
    TrackKind,
)

logger = logging.getLogger(__name__)

Listener = Callable[[ProjectDocument, ProjectDocument], None]

# Public commands validate their arguments; a wrong type raises ValidationError.
_command = validate_call(config=ConfigDict(allow_inf_nan=False))


# =============================================================================
# EXCEPTIONS
# =============================================================================


class ProjectStoreError(Exception):
    """Base exception for project store operations."""
    pass


class BatchNotOpenError(ProjectStoreError):
    """Raised when end_batch() has no matching begin_batch()."""
    pass


class BatchInProgressError(ProjectStoreError):
    """Raised when an operation must not run inside an open batch."""
    pass


# =============================================================================
# HELPERS
# =============================================================================


def generate_id() -> str:
    return str(uuid4())


def _merge(model: BaseModel, patch_type: type[BaseModel], patch: Any) -> Any | None:
    """
    Apply a merge-patch to a model.

    Only fields present in the patch are applied. Returns None when the patch
    or the merged result fails validation.
    """
    try:
        if not isinstance(patch, patch_type):
            patch = patch_type.model_validate(patch)
        updates = patch.model_dump(exclude_unset=True)
        return type(model).model_validate({**model.model_dump(), **updates})
    except ValidationError as e:
        logger.warning(f"Ignoring invalid {patch_type.__name__}: {e.errors()}")
        return None


def _select(document: ProjectDocument, clip_ids: list[str]) -> None:
    document.selected_clip_ids = clip_ids
    document.selected_clip_id = clip_ids[0] if len(clip_ids) == 1 else None


# =============================================================================
# STORE
# =============================================================================


class ProjectStore:
    """
    Owned, constructible handle on one project document.

    Create one per editor session; there is no module-level instance.
    """

    def __init__(self, document: ProjectDocument | None = None):
        self._state = (
            document.model_copy(deep=True) if document else ProjectDocument.default()
        )
        self._listeners: list[Listener] = []
        self._batch_origins: list[ProjectDocument] = []

    @property
    def state(self) -> ProjectDocument:
        return self._state

    def tracked_state(self) -> TrackedState:
        return self._state.tracked()

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def unsubscribe_all(self) -> None:
        self._listeners.clear()

    def _notify(self, state: ProjectDocument, previous: ProjectDocument) -> None:
        for listener in list(self._listeners):
            listener(state, previous)

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    @property
    def in_batch(self) -> bool:
        return bool(self._batch_origins)

    def begin_batch(self) -> None:
        """Start grouping commands. Batches nest."""
        self._batch_origins.append(self._state)

    def end_batch(self) -> None:
        """Close the innermost batch; the outermost one notifies observers once."""
        if not self._batch_origins:
            raise BatchNotOpenError("end_batch() called without begin_batch()")
        origin = self._batch_origins.pop()
        if self._batch_origins:
            return
        if self._state != origin:
            self._notify(self._state, origin)

    def _rollback_batch(self) -> None:
        self._state = self._batch_origins.pop()

    @contextmanager
    def batch(self) -> Iterator[ProjectStore]:
        """
        Run several commands as one change.

        If the block raises, the document returns to its state at the start
        of the block and nobody is notified for that block.
        """
        self.begin_batch()
        try:
            yield self
        except BaseException:
            self._rollback_batch()
            raise
        self.end_batch()

    # -------------------------------------------------------------------------
    # Commit plumbing
    # -------------------------------------------------------------------------

    def _draft(self) -> ProjectDocument:
        return self._state.model_copy(deep=True)

    def _commit(self, draft: ProjectDocument, action: str) -> None:
        if draft == self._state:
            logger.debug(f"{action}: no change")
            return
        previous, self._state = self._state, draft
        logger.debug(f"{action}: committed")
        if not self._batch_origins:
            self._notify(draft, previous)

    def _update_view(self, action: str, **updates: Any) -> None:
        # View-only fields: a shallow copy shares the untouched content.
        self._commit(self._state.model_copy(update=updates), action)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def find_asset(self, asset_id: str) -> Asset | None:
        for asset in self._state.asset_library:
            if asset.asset_id == asset_id:
                return asset
        return None

    def find_clip(self, clip_id: str) -> ClipLocation | None:
        return self._state.timeline.find_clip(clip_id)

    def dangling_clip_ids(self) -> list[str]:
        """Clips whose asset is no longer in the library."""
        asset_ids = {asset.asset_id for asset in self._state.asset_library}
        return [
            clip.clip_id
            for clip in self._state.timeline.iter_clips()
            if clip.asset_id not in asset_ids
        ]

    # -------------------------------------------------------------------------
    # Assets
    # -------------------------------------------------------------------------

    @_command
    def add_asset(self, asset: Asset) -> None:
        draft = self._draft()
        draft.asset_library.append(asset.model_copy(deep=True))
        self._commit(draft, "add_asset")

    @_command
    def update_asset(self, asset_id: str, patch: AssetPatch | dict[str, Any]) -> None:
        draft = self._draft()
        found = False
        for index, asset in enumerate(draft.asset_library):
            if asset.asset_id != asset_id:
                continue
            merged = _merge(asset, AssetPatch, patch)
            if merged is None:
                return
            draft.asset_library[index] = merged
            found = True
        if not found:
            logger.debug(f"update_asset: unknown asset {asset_id}")
            return
        self._commit(draft, "update_asset")

    @_command
    def remove_asset(self, asset_id: str) -> None:
        """Remove from the library only; clips keep their asset_id."""
        draft = self._draft()
        draft.asset_library = [a for a in draft.asset_library if a.asset_id != asset_id]
        self._commit(draft, "remove_asset")

    # -------------------------------------------------------------------------
    # Clips
    # -------------------------------------------------------------------------

    @_command
    def add_clip_to_timeline(
        self,
        asset: Asset,
        start_time: float,
        track_type: TrackKind = TrackKind.VIDEO,
        track_index: int = 0,
    ) -> str | None:
        """
        Place an asset on a track, growing the track list if needed.

        The clip lasts ``asset.duration`` seconds, or 5 seconds when the asset
        has no duration. Returns the new clip id, or None for a negative
        track index.
        """
        if track_index < 0:
            logger.warning(f"add_clip_to_timeline: invalid track index {track_index}")
            return None

        duration = asset.duration if asset.duration and asset.duration > 0 else DEFAULT_CLIP_DURATION
        clip = Clip(
            clip_id=generate_id(),
            asset_id=asset.asset_id,
            start_time=max(0.0, start_time),
            duration=duration,
            volume=1.0,
            text_overlays=[],
        )
        draft = self._draft()
        draft.timeline.ensure_track(track_type, track_index).append(clip)
        self._commit(draft, "add_clip_to_timeline")
        return clip.clip_id

    @_command
    def update_clip_properties(self, clip_id: str, patch: ClipPatch | dict[str, Any]) -> None:
        draft = self._draft()
        found = False
        for _, _, track in draft.timeline.iter_tracks():
            for position, clip in enumerate(track):
                if clip.clip_id != clip_id:
                    continue
                merged = _merge(clip, ClipPatch, patch)
                if merged is None:
                    return
                track[position] = merged
                found = True
        if not found:
            logger.debug(f"update_clip_properties: unknown clip {clip_id}")
            return
        self._commit(draft, "update_clip_properties")

    @_command
    def remove_clip(self, clip_id: str) -> None:
        """Remove a clip from every track and drop it from the selection."""
        draft = self._draft()
        for _, _, track in draft.timeline.iter_tracks():
            track[:] = [clip for clip in track if clip.clip_id != clip_id]
        _select(draft, [i for i in draft.selected_clip_ids if i != clip_id])
        self._commit(draft, "remove_clip")

    @_command
    def split_clip(self, clip_id: str, split_time: float) -> tuple[str, str] | None:
        """
        Cut a clip in two at ``split_time`` (seconds on the timeline).

        Both halves get new ids and replace the original at its position.
        The first half becomes the only selected clip. Returns the two new
        ids, or None when the clip is missing or the time is not strictly
        inside it.
        """
        location = self.find_clip(clip_id)
        if location is None:
            logger.debug(f"split_clip: unknown clip {clip_id}")
            return None

        clip = location.clip
        if split_time <= clip.start_time or split_time >= clip.end_time:
            logger.debug(f"split_clip: {split_time} outside clip {clip_id}")
            return None

        first = clip.model_copy(
            update={"clip_id": generate_id(), "duration": split_time - clip.start_time},
            deep=True,
        )
        second = clip.model_copy(
            update={
                "clip_id": generate_id(),
                "start_time": split_time,
                "duration": clip.end_time - split_time,
            },
            deep=True,
        )

        draft = self._draft()
        track = draft.timeline.tracks(location.kind)[location.track_index]
        track[location.position:location.position + 1] = [first, second]
        _select(draft, [first.clip_id])
        self._commit(draft, "split_clip")
        return first.clip_id, second.clip_id

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    def _set_selection(self, clip_ids: list[str], action: str) -> None:
        self._update_view(
            action,
            selected_clip_ids=clip_ids,
            selected_clip_id=clip_ids[0] if len(clip_ids) == 1 else None,
        )

    @_command
    def set_selected_clip_id(self, clip_id: str | None) -> None:
        self._set_selection([clip_id] if clip_id else [], "set_selected_clip_id")

    @_command
    def set_selected_clip_ids(self, clip_ids: list[str]) -> None:
        self._set_selection(list(dict.fromkeys(clip_ids)), "set_selected_clip_ids")

    @_command
    def add_to_selection(self, clip_id: str) -> None:
        selected = list(self._state.selected_clip_ids)
        if clip_id not in selected:
            selected.append(clip_id)
        self._set_selection(selected, "add_to_selection")

    @_command
    def remove_from_selection(self, clip_id: str) -> None:
        selected = [i for i in self._state.selected_clip_ids if i != clip_id]
        self._set_selection(selected, "remove_from_selection")

    @_command
    def toggle_selection(self, clip_id: str) -> None:
        if clip_id in self._state.selected_clip_ids:
            self.remove_from_selection(clip_id)
        else:
            self.add_to_selection(clip_id)

    def clear_selection(self) -> None:
        self._set_selection([], "clear_selection")

    # -------------------------------------------------------------------------
    # Playback & zoom
    # -------------------------------------------------------------------------

    @_command
    def set_current_time(self, time: float) -> None:
        self._update_view("set_current_time", current_time=max(0.0, time))

    @_command
    def set_playing(self, playing: bool) -> None:
        self._update_view("set_playing", is_playing=playing)

    @_command
    def set_timeline_scale(self, scale: float) -> None:
        clamped = max(MIN_TIMELINE_SCALE, min(MAX_TIMELINE_SCALE, scale))
        self._update_view("set_timeline_scale", timeline_scale=clamped)

    # -------------------------------------------------------------------------
    # Multi-select batch operations
    # -------------------------------------------------------------------------

    def delete_selected_clips(self) -> None:
        selected = set(self._state.selected_clip_ids)
        if not selected:
            return
        draft = self._draft()
        for _, _, track in draft.timeline.iter_tracks():
            track[:] = [clip for clip in track if clip.clip_id not in selected]
        _select(draft, [])
        self._commit(draft, "delete_selected_clips")

    @_command
    def move_selected_clips(self, delta: float) -> None:
        """Shift every selected clip by ``delta`` seconds, each clamped at 0."""
        selected = set(self._state.selected_clip_ids)
        if not selected:
            return
        draft = self._draft()
        for _, _, track in draft.timeline.iter_tracks():
            for position, clip in enumerate(track):
                if clip.clip_id in selected:
                    track[position] = clip.model_copy(
                        update={"start_time": max(0.0, clip.start_time + delta)}
                    )
        self._commit(draft, "move_selected_clips")

    @_command
    def update_selected_clips_properties(self, patch: ClipPatch | dict[str, Any]) -> None:
        """Merge-patch every selected clip. An invalid result changes nothing."""
        selected = set(self._state.selected_clip_ids)
        if not selected:
            return
        draft = self._draft()
        for _, _, track in draft.timeline.iter_tracks():
            for position, clip in enumerate(track):
                if clip.clip_id not in selected:
                    continue
                merged = _merge(clip, ClipPatch, patch)
                if merged is None:
                    return
                track[position] = merged
        self._commit(draft, "update_selected_clips_properties")

    # -------------------------------------------------------------------------
    # Whole-document operations
    # -------------------------------------------------------------------------

    @_command
    def load_project(self, document: ProjectDocument | dict[str, Any]) -> None:
        """Replace the whole document in one change. The document is re-validated."""
        if isinstance(document, ProjectDocument):
            document = document.model_dump()
        self._commit(ProjectDocument.model_validate(document), "load_project")
        logger.info(f"Loaded project '{self._state.project_settings.name}'")

    def reset_project(self) -> None:
        self._commit(ProjectDocument.default(), "reset_project")

    def replace_tracked_state(self, tracked: TrackedState) -> None:
        """Swap in a tracked partition, keeping selection, playhead and zoom."""
        self._commit(self._state.with_tracked(tracked), "replace_tracked_state")

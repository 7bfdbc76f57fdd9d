"""Input records consumed by the tree and bundle assemblers."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence

DEFAULT_SKIPPED_AUDIO_PLACEHOLDER = "SKIPPED"


def _first_present(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload:
            return payload[key]
    return None


def _optional_text(value: Any, *, field_name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string when provided")
    return value


def _validate_identifier(value: Any, *, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string, got {type(value)!r}")
    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{field_name} must be a non-empty string")
    return stripped


def is_real_audio_path(
    path: str | None, *, placeholder: str = DEFAULT_SKIPPED_AUDIO_PLACEHOLDER
) -> bool:
    """Return ``True`` when ``path`` names an audio file rather than the skip sentinel."""

    if not path:
        return False
    trimmed = path.strip()
    if not trimmed:
        return False
    return trimmed.upper() != placeholder.upper()


@dataclass(frozen=True)
class SceneletRecord:
    """A single persisted story beat with its parent link and branch metadata."""

    id: str
    parent_id: str | None = None
    choice_label_from_parent: str | None = None
    choice_prompt: str | None = None
    content: Mapping[str, Any] | None = None
    is_branch_point: bool = False
    is_terminal_node: bool = False
    created_at: str | datetime | None = None
    branch_audio_path: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SceneletRecord":
        """Build a record from a stored row using snake_case or camelCase keys."""

        if not isinstance(payload, Mapping):
            raise ValueError("Scenelet payload must be an object")

        scenelet_id = payload.get("id")
        if not isinstance(scenelet_id, str):
            raise ValueError("Scenelet payload is missing a string 'id'")

        parent_id = _optional_text(
            _first_present(payload, "parent_id", "parentId"), field_name="parent_id"
        )
        content = payload.get("content")
        if content is not None and not isinstance(content, Mapping):
            raise ValueError(f"Scenelet '{scenelet_id}' content must be an object")

        return cls(
            id=scenelet_id,
            parent_id=parent_id,
            choice_label_from_parent=_optional_text(
                _first_present(
                    payload, "choice_label_from_parent", "choiceLabelFromParent"
                ),
                field_name="choice_label_from_parent",
            ),
            choice_prompt=_optional_text(
                _first_present(payload, "choice_prompt", "choicePrompt"),
                field_name="choice_prompt",
            ),
            content=content,
            is_branch_point=bool(
                _first_present(payload, "is_branch_point", "isBranchPoint")
            ),
            is_terminal_node=bool(
                _first_present(payload, "is_terminal_node", "isTerminalNode")
            ),
            created_at=_optional_text(
                _first_present(payload, "created_at", "createdAt"),
                field_name="created_at",
            ),
            branch_audio_path=_optional_text(
                _first_present(
                    payload, "branch_audio_path", "branchAudioPath", "branchAudioFilePath"
                ),
                field_name="branch_audio_path",
            ),
        )


@dataclass(frozen=True)
class ShotRecord:
    """Persisted media metadata for one shot of a scenelet."""

    scenelet_ref: str
    shot_index: int
    key_frame_image_path: str | None = None
    audio_file_path: str | None = None
    scenelet_alias: str | None = None

    @classmethod
    def from_payload(
        cls, payload: Mapping[str, Any], *, scenelet_ref: str | None = None
    ) -> "ShotRecord":
        """Build a shot from a stored row; ``scenelet_ref`` overrides the payload."""

        if not isinstance(payload, Mapping):
            raise ValueError("Shot payload must be an object")

        ref = scenelet_ref or _first_present(payload, "scenelet_ref", "sceneletRef")
        if not isinstance(ref, str) or not ref.strip():
            raise ValueError("Shot payload is missing its owning scenelet reference")

        shot_index = _first_present(payload, "shot_index", "shotIndex")
        if isinstance(shot_index, bool) or not isinstance(shot_index, int):
            raise ValueError(f"Shot of scenelet '{ref}' must define an integer shot_index")

        return cls(
            scenelet_ref=ref,
            shot_index=shot_index,
            key_frame_image_path=_optional_text(
                _first_present(payload, "key_frame_image_path", "keyFrameImagePath"),
                field_name="key_frame_image_path",
            ),
            audio_file_path=_optional_text(
                _first_present(payload, "audio_file_path", "audioFilePath"),
                field_name="audio_file_path",
            ),
            scenelet_alias=_optional_text(
                _first_present(payload, "scenelet_alias", "sceneletId", "scenelet_id"),
                field_name="scenelet_alias",
            ),
        )


@dataclass(frozen=True)
class StoryRecord:
    """Story metadata plus the optional audio design document."""

    id: str
    title: str | None = None
    audio_design_document: Any = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _validate_identifier(self.id, field_name="story id"))

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "StoryRecord":
        if not isinstance(payload, Mapping):
            raise ValueError("Story payload must be an object")
        return cls(
            id=payload.get("id"),  # type: ignore[arg-type]
            title=_optional_text(
                _first_present(payload, "title", "display_name", "displayName"),
                field_name="title",
            ),
            audio_design_document=_first_present(
                payload, "audio_design_document", "audioDesignDocument"
            ),
        )


@dataclass
class StorySnapshot:
    """Everything persisted for one story: metadata, scenelets, and shots."""

    story: StoryRecord
    scenelets: List[SceneletRecord] = field(default_factory=list)
    shots_by_scenelet: Dict[str, List[ShotRecord]] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "StorySnapshot":
        """Parse a snapshot document with ``story``, ``scenelets`` and ``shots`` keys."""

        if not isinstance(payload, Mapping):
            raise ValueError("Story snapshot must be an object")

        story = StoryRecord.from_payload(payload.get("story") or {})

        raw_scenelets = payload.get("scenelets", [])
        if not isinstance(raw_scenelets, list):
            raise ValueError("Story snapshot 'scenelets' must be a list")
        scenelets = [SceneletRecord.from_payload(entry) for entry in raw_scenelets]

        raw_shots = payload.get("shots", {})
        if not isinstance(raw_shots, Mapping):
            raise ValueError("Story snapshot 'shots' must map scenelet ids to shot lists")
        shots: Dict[str, List[ShotRecord]] = {}
        for scenelet_ref, entries in raw_shots.items():
            if not isinstance(entries, list):
                raise ValueError(f"Shots for scenelet '{scenelet_ref}' must be a list")
            shots[str(scenelet_ref)] = [
                ShotRecord.from_payload(entry, scenelet_ref=str(scenelet_ref))
                for entry in entries
            ]

        return cls(story=story, scenelets=scenelets, shots_by_scenelet=shots)


def group_shots_by_scenelet(shots: Iterable[ShotRecord]) -> Dict[str, List[ShotRecord]]:
    """Group shot rows by owning scenelet, ordered by shot index."""

    grouped: Dict[str, List[ShotRecord]] = {}
    for shot in shots:
        grouped.setdefault(shot.scenelet_ref, []).append(shot)
    for entries in grouped.values():
        entries.sort(key=lambda shot: shot.shot_index)
    return grouped


class StoryRepository(ABC):
    """Read-only access to persisted stories, scenelets, and shots."""

    @abstractmethod
    def get_story(self, story_id: str) -> StoryRecord | None:
        """Return story metadata or ``None`` when the story is unknown."""

    @abstractmethod
    def list_scenelets(self, story_id: str) -> Sequence[SceneletRecord]:
        """Return every scenelet persisted for the story."""

    @abstractmethod
    def get_shots_by_story(self, story_id: str) -> Mapping[str, Sequence[ShotRecord]]:
        """Return shots grouped by owning scenelet id."""


class InMemoryStoryRepository(StoryRepository):
    """Serve story snapshots held in local process memory."""

    def __init__(self, snapshots: Iterable[StorySnapshot] = ()) -> None:
        self._snapshots: Dict[str, StorySnapshot] = {}
        for snapshot in snapshots:
            self.add(snapshot)

    def add(self, snapshot: StorySnapshot) -> None:
        self._snapshots[snapshot.story.id] = snapshot

    def get_story(self, story_id: str) -> StoryRecord | None:
        snapshot = self._snapshots.get(_validate_identifier(story_id, field_name="story id"))
        return snapshot.story if snapshot is not None else None

    def list_scenelets(self, story_id: str) -> Sequence[SceneletRecord]:
        snapshot = self._snapshots.get(_validate_identifier(story_id, field_name="story id"))
        return list(snapshot.scenelets) if snapshot is not None else []

    def get_shots_by_story(self, story_id: str) -> Mapping[str, Sequence[ShotRecord]]:
        snapshot = self._snapshots.get(_validate_identifier(story_id, field_name="story id"))
        if snapshot is None:
            return {}
        return {key: list(value) for key, value in snapshot.shots_by_scenelet.items()}


class FileStoryRepository(StoryRepository):
    """Read story snapshots stored as ``<story_id>.json`` files."""

    def __init__(self, storage_dir: Path) -> None:
        self.storage_dir = Path(storage_dir)

    def get_story(self, story_id: str) -> StoryRecord | None:
        snapshot = self._load(story_id)
        return snapshot.story if snapshot is not None else None

    def list_scenelets(self, story_id: str) -> Sequence[SceneletRecord]:
        snapshot = self._load(story_id)
        return list(snapshot.scenelets) if snapshot is not None else []

    def get_shots_by_story(self, story_id: str) -> Mapping[str, Sequence[ShotRecord]]:
        snapshot = self._load(story_id)
        return dict(snapshot.shots_by_scenelet) if snapshot is not None else {}

    def list_stories(self) -> List[str]:
        return sorted(
            path.stem for path in self.storage_dir.glob("*.json") if path.is_file()
        )

    def _load(self, story_id: str) -> StorySnapshot | None:
        validated = _validate_identifier(story_id, field_name="story id")
        story_file = self.storage_dir / f"{validated}.json"
        if not story_file.exists():
            return None
        payload = json.loads(story_file.read_text(encoding="utf-8"))
        return StorySnapshot.from_payload(payload)


__all__ = [
    "DEFAULT_SKIPPED_AUDIO_PLACEHOLDER",
    "FileStoryRepository",
    "InMemoryStoryRepository",
    "SceneletRecord",
    "ShotRecord",
    "StoryRecord",
    "StoryRepository",
    "StorySnapshot",
    "group_shots_by_scenelet",
    "is_real_audio_path",
]

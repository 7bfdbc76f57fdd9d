"""Data model for the playable story bundle handed to the player runtime."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, ClassVar, Dict, Mapping, Sequence, Union


class InvalidBundleError(ValueError):
    """Raised when bundle data is structurally unusable for playback."""


class BundleAssemblyError(ValueError):
    """Raised when persisted story content cannot be turned into a bundle."""


@dataclass(frozen=True)
class ShotNode:
    """One still image with optional narration audio, played in index order."""

    shot_index: int
    image_path: str | None = None
    audio_path: str | None = None

    def to_payload(self) -> Dict[str, object]:
        return {
            "shot_index": self.shot_index,
            "image_path": self.image_path,
            "audio_path": self.audio_path,
        }


@dataclass(frozen=True)
class BranchChoice:
    label: str
    scenelet_id: str

    def to_payload(self) -> Dict[str, object]:
        return {"label": self.label, "scenelet_id": self.scenelet_id}


@dataclass(frozen=True)
class LinearNext:
    scenelet_id: str
    type: ClassVar[str] = "linear"

    def to_payload(self) -> Dict[str, object]:
        return {"type": self.type, "scenelet_id": self.scenelet_id}


@dataclass(frozen=True)
class BranchNext:
    choice_prompt: str
    choices: tuple[BranchChoice, ...]
    type: ClassVar[str] = "branch"

    def __post_init__(self) -> None:
        object.__setattr__(self, "choices", tuple(self.choices))

    def to_payload(self) -> Dict[str, object]:
        return {
            "type": self.type,
            "choice_prompt": self.choice_prompt,
            "choices": [choice.to_payload() for choice in self.choices],
        }


@dataclass(frozen=True)
class TerminalNext:
    type: ClassVar[str] = "terminal"

    def to_payload(self) -> Dict[str, object]:
        return {"type": self.type}


@dataclass(frozen=True)
class IncompleteNext:
    type: ClassVar[str] = "incomplete"

    def to_payload(self) -> Dict[str, object]:
        return {"type": self.type}


NextTransition = Union[LinearNext, BranchNext, TerminalNext, IncompleteNext]


def transition_targets(next_node: NextTransition) -> tuple[str, ...]:
    """Return every scenelet id a transition can lead to."""

    if isinstance(next_node, LinearNext):
        return (next_node.scenelet_id,)
    if isinstance(next_node, BranchNext):
        return tuple(choice.scenelet_id for choice in next_node.choices)
    if isinstance(next_node, (TerminalNext, IncompleteNext)):
        return ()
    raise TypeError(f"Unsupported transition type: {type(next_node)!r}")


@dataclass(frozen=True)
class BundleNode:
    """A playable scenelet: its shots and what happens after the last one."""

    id: str
    description: str
    shots: tuple[ShotNode, ...]
    next: NextTransition
    branch_audio_path: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "shots", tuple(self.shots))

    def to_payload(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "description": self.description,
            "shots": [shot.to_payload() for shot in self.shots],
            "next": self.next.to_payload(),
            "branch_audio_path": self.branch_audio_path,
        }


@dataclass(frozen=True)
class MusicCue:
    cue_name: str
    scenelet_ids: tuple[str, ...]
    audio_path: str | None

    def __post_init__(self) -> None:
        object.__setattr__(self, "scenelet_ids", tuple(self.scenelet_ids))

    def to_payload(self) -> Dict[str, object]:
        return {
            "cue_name": self.cue_name,
            "scenelet_ids": list(self.scenelet_ids),
            "audio_path": self.audio_path,
        }


@dataclass(frozen=True)
class MusicManifest:
    """Background music cues plus the derived scenelet -> cue lookup."""

    cues: tuple[MusicCue, ...] = ()
    scenelet_cue_map: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "cues", tuple(self.cues))
        object.__setattr__(
            self, "scenelet_cue_map", MappingProxyType(dict(self.scenelet_cue_map))
        )

    def cue_for(self, scenelet_id: str) -> MusicCue | None:
        cue_name = self.scenelet_cue_map.get(scenelet_id)
        if cue_name is None:
            return None
        for cue in self.cues:
            if cue.cue_name == cue_name:
                return cue
        return None

    def to_payload(self) -> Dict[str, object]:
        return {
            "cues": [cue.to_payload() for cue in self.cues],
            "scenelet_cue_map": dict(self.scenelet_cue_map),
        }


@dataclass(frozen=True)
class BundleMetadata:
    story_id: str
    title: str
    exported_at: str

    def to_payload(self) -> Dict[str, object]:
        return {
            "story_id": self.story_id,
            "title": self.title,
            "exported_at": self.exported_at,
        }


@dataclass(frozen=True)
class StoryBundle:
    """The complete playable unit consumed by :class:`PlayerController`."""

    metadata: BundleMetadata
    root_scenelet_id: str
    scenelets: tuple[BundleNode, ...]
    music: MusicManifest = field(default_factory=MusicManifest)

    def __post_init__(self) -> None:
        object.__setattr__(self, "scenelets", tuple(self.scenelets))

    def node_map(self) -> Mapping[str, BundleNode]:
        return MappingProxyType({node.id: node for node in self.scenelets})

    def to_payload(self) -> Dict[str, object]:
        """Return a JSON-serialisable representation of the bundle."""

        return {
            "metadata": self.metadata.to_payload(),
            "root_scenelet_id": self.root_scenelet_id,
            "scenelets": [node.to_payload() for node in self.scenelets],
            "music": self.music.to_payload(),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "StoryBundle":
        """Parse a bundle document using snake_case or the player's camelCase keys."""

        if not isinstance(payload, Mapping):
            raise InvalidBundleError("Story JSON must contain an object.")

        raw_metadata = payload.get("metadata")
        if not isinstance(raw_metadata, Mapping):
            raise InvalidBundleError("Story JSON missing metadata block.")
        metadata = BundleMetadata(
            story_id=str(_pick(raw_metadata, "story_id", "storyId") or ""),
            title=str(raw_metadata.get("title") or ""),
            exported_at=str(_pick(raw_metadata, "exported_at", "exportedAt") or ""),
        )

        root_id = _pick(payload, "root_scenelet_id", "rootSceneletId")
        if not isinstance(root_id, str) or not root_id:
            raise InvalidBundleError("Story JSON missing root_scenelet_id.")

        raw_nodes = payload.get("scenelets")
        if not isinstance(raw_nodes, list) or not raw_nodes:
            raise InvalidBundleError("Story JSON missing scenelets array.")
        nodes = tuple(_node_from_payload(entry) for entry in raw_nodes)

        return cls(
            metadata=metadata,
            root_scenelet_id=root_id,
            scenelets=nodes,
            music=_music_from_payload(payload.get("music")),
        )


def _pick(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload:
            return payload[key]
    return None


def _node_from_payload(entry: Any) -> BundleNode:
    if not isinstance(entry, Mapping):
        raise InvalidBundleError("Each scenelet must be an object.")

    scenelet_id = entry.get("id")
    if not isinstance(scenelet_id, str) or not scenelet_id.strip():
        raise InvalidBundleError("Scenelet missing id field.")

    raw_shots = entry.get("shots")
    if not isinstance(raw_shots, list) or not raw_shots:
        raise InvalidBundleError(f"Scenelet {scenelet_id} is missing playable shots.")
    shots: list[ShotNode] = []
    for shot in raw_shots:
        if not isinstance(shot, Mapping):
            raise InvalidBundleError(f"Scenelet {scenelet_id} contains an invalid shot.")
        shot_index = _pick(shot, "shot_index", "shotIndex")
        if isinstance(shot_index, bool) or not isinstance(shot_index, int):
            raise InvalidBundleError(f"Scenelet {scenelet_id} shot is missing shot_index.")
        shots.append(
            ShotNode(
                shot_index=shot_index,
                image_path=_pick(shot, "image_path", "imagePath"),
                audio_path=_pick(shot, "audio_path", "audioPath"),
            )
        )

    return BundleNode(
        id=scenelet_id,
        description=str(entry.get("description") or ""),
        shots=tuple(shots),
        next=_next_from_payload(scenelet_id, entry.get("next")),
        branch_audio_path=_pick(entry, "branch_audio_path", "branchAudioPath"),
    )


def _next_from_payload(scenelet_id: str, raw: Any) -> NextTransition:
    if not isinstance(raw, Mapping) or not isinstance(raw.get("type"), str):
        raise InvalidBundleError(
            f"Scenelet {scenelet_id} missing next transition configuration."
        )

    kind = raw["type"]
    if kind == "terminal":
        return TerminalNext()
    if kind == "incomplete":
        return IncompleteNext()
    if kind == "linear":
        target = _pick(raw, "scenelet_id", "sceneletId")
        if not isinstance(target, str):
            raise InvalidBundleError(
                f"Scenelet {scenelet_id} references missing scenelet {target or '(unknown)'}."
            )
        return LinearNext(scenelet_id=target)
    if kind == "branch":
        raw_choices = raw.get("choices")
        if not isinstance(raw_choices, list):
            raise InvalidBundleError(f"Scenelet {scenelet_id} has a branch without choices.")
        choices: list[BranchChoice] = []
        for choice in raw_choices:
            if not isinstance(choice, Mapping):
                raise InvalidBundleError(
                    f"Scenelet {scenelet_id} contains an invalid branch choice."
                )
            target = _pick(choice, "scenelet_id", "sceneletId")
            if not isinstance(target, str):
                raise InvalidBundleError(
                    f"Scenelet {scenelet_id} choice references missing scenelet {target or '(unknown)'}."
                )
            choices.append(BranchChoice(label=str(choice.get("label") or ""), scenelet_id=target))
        prompt = _pick(raw, "choice_prompt", "choicePrompt")
        return BranchNext(choice_prompt=str(prompt or ""), choices=tuple(choices))

    raise InvalidBundleError(f"Scenelet {scenelet_id} has unknown next type '{kind}'.")


def _music_from_payload(raw: Any) -> MusicManifest:
    if raw is None:
        return MusicManifest()
    if not isinstance(raw, Mapping):
        raise InvalidBundleError("Story JSON music block must be an object.")

    cues: list[MusicCue] = []
    raw_cues = raw.get("cues") or []
    if not isinstance(raw_cues, list):
        raise InvalidBundleError("Story JSON music cues must be a list.")
    for cue in raw_cues:
        if not isinstance(cue, Mapping):
            raise InvalidBundleError("Story JSON music cue must be an object.")
        scenelet_ids: Sequence[Any] = _pick(cue, "scenelet_ids", "sceneletIds") or []
        cues.append(
            MusicCue(
                cue_name=str(_pick(cue, "cue_name", "cueName") or ""),
                scenelet_ids=tuple(str(value) for value in scenelet_ids),
                audio_path=_pick(cue, "audio_path", "audioPath"),
            )
        )

    raw_map = _pick(raw, "scenelet_cue_map", "sceneletCueMap") or {}
    if not isinstance(raw_map, Mapping):
        raise InvalidBundleError("Story JSON scenelet cue map must be an object.")

    return MusicManifest(
        cues=tuple(cues),
        scenelet_cue_map={str(key): str(value) for key, value in raw_map.items()},
    )


__all__ = [
    "BranchChoice",
    "BranchNext",
    "BundleAssemblyError",
    "BundleMetadata",
    "BundleNode",
    "IncompleteNext",
    "InvalidBundleError",
    "LinearNext",
    "MusicCue",
    "MusicManifest",
    "NextTransition",
    "ShotNode",
    "StoryBundle",
    "TerminalNext",
    "transition_targets",
]

"""Background music cues derived from the story's audio design document."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable, Mapping

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from .bundle import BundleAssemblyError, MusicCue, MusicManifest

logger = logging.getLogger(__name__)

_ENVELOPE_KEYS = ("audio_design_document", "audioDesignDocument")
_HOSTILE_PATH_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')
_WHITESPACE = re.compile(r"\s+")
_REPEATED_DASHES = re.compile(r"-{2,}")


class AudioMusicCueEntry(BaseModel):
    """A single cue entry from ``music_and_ambience_cues``."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    cue_name: str | None = Field(
        default=None, validation_alias=AliasChoices("cue_name", "cueName")
    )
    associated_scenelet_ids: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("associated_scenelet_ids", "associatedSceneletIds"),
    )

    @field_validator("cue_name", mode="before")
    @classmethod
    def _strip_cue_name(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @field_validator("associated_scenelet_ids", mode="before")
    @classmethod
    def _default_ids(cls, value: Any) -> Any:
        return [] if value is None else value


class AudioDesignDocument(BaseModel):
    """The subset of the audio design document the bundle needs."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    music_and_ambience_cues: list[dict[str, Any]] = Field(
        default_factory=list,
        validation_alias=AliasChoices("music_and_ambience_cues", "musicAndAmbienceCues"),
    )


def parse_audio_design_document(document: Any) -> list[AudioMusicCueEntry]:
    """Return the usable cue entries from ``document``.

    ``document`` may be a mapping or a JSON string, optionally wrapped in an
    ``audio_design_document`` envelope. A document that is not an object raises
    :class:`BundleAssemblyError`; malformed or unnamed cues are skipped.
    """

    if document is None:
        return []

    payload = document
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise BundleAssemblyError(
                f"Audio design document contains invalid JSON: {exc.msg}."
            ) from exc

    if not isinstance(payload, Mapping):
        raise BundleAssemblyError("Audio design document must be an object.")

    for key in _ENVELOPE_KEYS:
        wrapped = payload.get(key)
        if isinstance(wrapped, Mapping):
            payload = wrapped
            break

    try:
        parsed = AudioDesignDocument.model_validate(payload)
    except ValidationError as exc:
        raise BundleAssemblyError(
            f"Audio design document has an invalid cue list: {exc.errors()[0]['msg']}."
        ) from exc

    cues: list[AudioMusicCueEntry] = []
    for index, raw_cue in enumerate(parsed.music_and_ambience_cues):
        try:
            cue = AudioMusicCueEntry.model_validate(raw_cue)
        except ValidationError:
            logger.warning("Skipping malformed music cue #%d", index)
            continue
        if cue.cue_name is None:
            logger.warning("Skipping music cue #%d without cue_name", index)
            continue
        cues.append(cue)
    return cues


def sanitize_cue_name(cue_name: str) -> str:
    """Turn a cue name into a safe file stem."""

    sanitized = _HOSTILE_PATH_CHARS.sub("-", cue_name.strip())
    sanitized = _WHITESPACE.sub("-", sanitized)
    sanitized = _REPEATED_DASHES.sub("-", sanitized).strip("-")
    return sanitized or "cue"


def build_music_relative_path(cue_name: str) -> str:
    return f"assets/music/{sanitize_cue_name(cue_name)}.m4a"


def build_music_manifest(
    cues: Iterable[AudioMusicCueEntry],
    node_ids: Iterable[str],
    aliases: Mapping[str, str] | None = None,
) -> MusicManifest:
    """Assign bundle nodes to cues; the first cue to claim a node keeps it.

    Referenced ids resolve directly when they name a bundle node and otherwise
    through ``aliases``. Ids outside the bundle, later conflicting claims, and
    cues left without nodes are dropped and logged.
    """

    available = set(node_ids)
    alias_table = dict(aliases or {})
    manifest_cues: list[MusicCue] = []
    cue_map: dict[str, str] = {}
    seen_names: set[str] = set()

    for cue in cues:
        cue_name = cue.cue_name
        if not cue_name:
            continue
        if cue_name in seen_names:
            logger.warning("Skipping duplicate music cue %s", cue_name)
            continue

        claimed: list[str] = []
        for reference in cue.associated_scenelet_ids:
            scenelet_id = _resolve_reference(reference, available, alias_table)
            if scenelet_id is None or scenelet_id in claimed:
                continue
            existing = cue_map.get(scenelet_id)
            if existing is not None:
                logger.warning(
                    "Scenelet %s already assigned to music cue %s; ignoring cue %s",
                    scenelet_id,
                    existing,
                    cue_name,
                )
                continue
            claimed.append(scenelet_id)

        if not claimed:
            logger.warning("Dropping music cue %s with no bundled scenelets", cue_name)
            continue

        seen_names.add(cue_name)
        for scenelet_id in claimed:
            cue_map[scenelet_id] = cue_name
        manifest_cues.append(
            MusicCue(
                cue_name=cue_name,
                scenelet_ids=tuple(claimed),
                audio_path=build_music_relative_path(cue_name),
            )
        )

    return MusicManifest(cues=tuple(manifest_cues), scenelet_cue_map=cue_map)


def _resolve_reference(
    reference: str, available: set[str], aliases: Mapping[str, str]
) -> str | None:
    trimmed = reference.strip()
    if not trimmed:
        return None
    if trimmed in available:
        return trimmed
    resolved = aliases.get(trimmed)
    if resolved is not None and resolved in available:
        return resolved
    return None


def remap_music_for_embedded(manifest: MusicManifest, story_id: str) -> MusicManifest:
    """Point cue audio at ``/generated/<story_id>/music`` for hosts serving assets in place."""

    cues = []
    for cue in manifest.cues:
        file_name = cue.audio_path.rsplit("/", 1)[-1] if cue.audio_path else None
        audio_path = f"/generated/{story_id}/music/{file_name}" if file_name else cue.audio_path
        cues.append(
            MusicCue(cue_name=cue.cue_name, scenelet_ids=cue.scenelet_ids, audio_path=audio_path)
        )
    return MusicManifest(cues=tuple(cues), scenelet_cue_map=dict(manifest.scenelet_cue_map))


__all__ = [
    "AudioDesignDocument",
    "AudioMusicCueEntry",
    "build_music_manifest",
    "build_music_relative_path",
    "parse_audio_design_document",
    "remap_music_for_embedded",
    "sanitize_cue_name",
]

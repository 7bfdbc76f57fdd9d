"""Build the playable story bundle from persisted scenelets and shots."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Iterable, Mapping, Sequence

from .bundle import (
    BranchChoice,
    BranchNext,
    BundleAssemblyError,
    BundleMetadata,
    BundleNode,
    IncompleteNext,
    LinearNext,
    NextTransition,
    ShotNode,
    StoryBundle,
    TerminalNext,
)
from .music import (
    build_music_manifest,
    parse_audio_design_document,
    remap_music_for_embedded,
)
from .records import (
    DEFAULT_SKIPPED_AUDIO_PLACEHOLDER,
    SceneletRecord,
    ShotRecord,
    StoryRecord,
    StoryRepository,
    is_real_audio_path,
)
from .settings import BundleSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShotAssetPaths:
    """Bundle-relative media paths for one shot."""

    image_path: str | None
    audio_path: str | None


SceneletShotAssets = Mapping[int, ShotAssetPaths]
AssetManifest = Mapping[str, SceneletShotAssets]


@dataclass(frozen=True)
class BundleAssemblyResult:
    """The bundle plus the asset manifest trimmed to reachable scenelets."""

    bundle: StoryBundle
    asset_manifest: AssetManifest


def build_image_relative_path(scenelet_id: str, shot_index: int) -> str:
    return f"assets/shots/{scenelet_id}/{shot_index}_key_frame.png"


def build_audio_relative_path(scenelet_id: str, shot_index: int) -> str:
    return f"assets/shots/{scenelet_id}/{shot_index}_audio.wav"


def build_branch_audio_relative_path(scenelet_id: str) -> str:
    return f"assets/shots/{scenelet_id}/branch_audio.wav"


def assemble_bundle(
    story_id: str,
    repository: StoryRepository,
    *,
    shots_by_scenelet: Mapping[str, Sequence[ShotRecord]] | None = None,
    asset_manifest: AssetManifest | None = None,
    branch_audio_paths: Mapping[str, str] | None = None,
    exported_at: str | None = None,
    settings: BundleSettings | None = None,
) -> BundleAssemblyResult:
    """Load a story from ``repository`` and assemble its playable bundle.

    ``shots_by_scenelet`` and ``asset_manifest`` may be supplied when the caller
    has already loaded shots or copied assets; otherwise they are derived from
    the repository.
    """

    normalised_id = story_id.strip() if isinstance(story_id, str) else ""
    if not normalised_id:
        raise BundleAssemblyError("Story id must be provided to assemble bundle JSON.")

    story = repository.get_story(normalised_id)
    if story is None:
        raise BundleAssemblyError(f"Story {normalised_id} not found.")

    scenelets = list(repository.list_scenelets(normalised_id))
    if shots_by_scenelet is None:
        shots_by_scenelet = repository.get_shots_by_story(normalised_id)

    return build_bundle(
        story,
        scenelets,
        shots_by_scenelet,
        asset_manifest=asset_manifest,
        branch_audio_paths=branch_audio_paths,
        exported_at=exported_at,
        settings=settings,
    )


def build_bundle(
    story: StoryRecord,
    scenelets: Sequence[SceneletRecord],
    shots_by_scenelet: Mapping[str, Sequence[ShotRecord]],
    *,
    asset_manifest: AssetManifest | None = None,
    branch_audio_paths: Mapping[str, str] | None = None,
    exported_at: str | None = None,
    settings: BundleSettings | None = None,
) -> BundleAssemblyResult:
    """Assemble a bundle from already-loaded records."""

    settings = settings or BundleSettings()
    story_id = story.id

    if not scenelets:
        raise BundleAssemblyError(f"Story {story_id} does not have any scenelets to bundle.")

    roots = [scenelet for scenelet in scenelets if scenelet.parent_id is None]
    if not roots:
        raise BundleAssemblyError(f"Story {story_id} is missing a root scenelet.")
    if len(roots) > 1:
        root_ids = ", ".join(scenelet.id for scenelet in roots)
        raise BundleAssemblyError(f"Story {story_id} has multiple root scenelets: {root_ids}.")
    root = roots[0]

    manifest = (
        asset_manifest
        if asset_manifest is not None
        else build_asset_manifest(
            shots_by_scenelet, placeholder=settings.skipped_audio_placeholder
        )
    )
    shot_nodes: dict[str, tuple[ShotNode, ...]] = {}
    for scenelet_id, scenelet_assets in manifest.items():
        shots = build_shot_nodes(scenelet_assets)
        if shots:
            shot_nodes[scenelet_id] = shots
        else:
            logger.warning("Scenelet %s skipped due to missing assets", scenelet_id)
    if not shot_nodes:
        raise BundleAssemblyError(f"Story {story_id} does not have any playable shots.")

    available = set(shot_nodes)
    if root.id not in available:
        raise BundleAssemblyError(
            f"Root scenelet {root.id} does not have playable assets. Cannot assemble bundle."
        )

    children_by_parent = _build_children_map(scenelets)
    reachable = compute_reachable_scenelet_ids(root.id, available, children_by_parent)
    if branch_audio_paths is None:
        branch_audio_paths = _derive_branch_audio_paths(
            scenelets, placeholder=settings.skipped_audio_placeholder
        )

    nodes: list[BundleNode] = []
    for scenelet in scenelets:
        if scenelet.id not in reachable:
            if scenelet.id in available:
                logger.debug("Scenelet %s has assets but is unreachable", scenelet.id)
            continue

        next_node = determine_next_state(
            scenelet, children_by_parent.get(scenelet.id, ()), available
        )
        nodes.append(
            BundleNode(
                id=scenelet.id,
                description=_extract_description(scenelet),
                shots=shot_nodes[scenelet.id],
                next=next_node,
                branch_audio_path=(
                    branch_audio_paths.get(scenelet.id)
                    if isinstance(next_node, BranchNext)
                    else None
                ),
            )
        )

    if not nodes:
        raise BundleAssemblyError(f"Story {story_id} does not have any playable scenelets.")

    node_ids = [node.id for node in nodes]
    music = build_music_manifest(
        parse_audio_design_document(story.audio_design_document),
        node_ids,
        build_scenelet_alias_table(shots_by_scenelet),
    )

    bundle = StoryBundle(
        metadata=BundleMetadata(
            story_id=story_id,
            title=(story.title or "").strip() or settings.default_title,
            exported_at=exported_at or _format_timestamp(datetime.now(timezone.utc)),
        ),
        root_scenelet_id=root.id,
        scenelets=tuple(nodes),
        music=music,
    )

    logger.debug(
        "Assembled story bundle for %s with %d scenelets and %d music cues",
        story_id,
        len(nodes),
        len(music.cues),
    )

    trimmed_manifest = {
        scenelet_id: manifest[scenelet_id]
        for scenelet_id in reachable
    }
    return BundleAssemblyResult(
        bundle=bundle, asset_manifest=MappingProxyType(trimmed_manifest)
    )


def determine_next_state(
    scenelet: SceneletRecord,
    children: Sequence[SceneletRecord],
    available_ids: Iterable[str],
) -> NextTransition:
    """Compute how playback continues after ``scenelet``'s last shot.

    Only children present in ``available_ids`` are playable. Authoring errors
    (missing prompt, fewer than two branch children, linear fan-out, missing
    choice labels, non-terminal leaves) raise :class:`BundleAssemblyError`.
    """

    if scenelet.is_terminal_node:
        return TerminalNext()

    available = set(available_ids)
    playable = [child for child in children if child.id in available]

    if scenelet.is_branch_point:
        prompt = (scenelet.choice_prompt or "").strip()
        if not prompt:
            raise BundleAssemblyError(
                f"Scenelet {scenelet.id} is marked as a branch point but is missing a choice prompt."
            )
        if len(children) < 2:
            raise BundleAssemblyError(
                f"Scenelet {scenelet.id} is marked as a branch point but has fewer than two children."
            )

        if len(playable) >= 2:
            choices: list[BranchChoice] = []
            for child in playable:
                label = (child.choice_label_from_parent or "").strip()
                if not label:
                    raise BundleAssemblyError(
                        f"Scenelet {child.id} is missing a choice label from parent {scenelet.id}."
                    )
                choices.append(BranchChoice(label=label, scenelet_id=child.id))
            return BranchNext(choice_prompt=prompt, choices=tuple(choices))

        if len(playable) == 1:
            return LinearNext(scenelet_id=playable[0].id)

        return IncompleteNext()

    if not children:
        raise BundleAssemblyError(
            f"Scenelet {scenelet.id} is missing children required for linear continuation."
        )
    if not playable:
        return IncompleteNext()
    if len(playable) > 1:
        playable_ids = ", ".join(child.id for child in playable)
        raise BundleAssemblyError(
            f"Scenelet {scenelet.id} is expected to be linear but has multiple playable children: {playable_ids}."
        )
    return LinearNext(scenelet_id=playable[0].id)


def build_asset_manifest(
    shots_by_scenelet: Mapping[str, Sequence[ShotRecord]],
    *,
    placeholder: str = DEFAULT_SKIPPED_AUDIO_PLACEHOLDER,
) -> dict[str, dict[int, ShotAssetPaths]]:
    """Map each scenelet to the shots that have an image or real audio."""

    manifest: dict[str, dict[int, ShotAssetPaths]] = {}
    for scenelet_id, shots in shots_by_scenelet.items():
        if not shots:
            continue

        shot_map: dict[int, ShotAssetPaths] = {}
        for shot in shots:
            has_image = bool((shot.key_frame_image_path or "").strip())
            has_audio = is_real_audio_path(shot.audio_file_path, placeholder=placeholder)
            if not has_image and not has_audio:
                continue
            shot_map[shot.shot_index] = ShotAssetPaths(
                image_path=(
                    build_image_relative_path(scenelet_id, shot.shot_index)
                    if has_image
                    else None
                ),
                audio_path=(
                    build_audio_relative_path(scenelet_id, shot.shot_index)
                    if has_audio
                    else None
                ),
            )

        if shot_map:
            manifest[scenelet_id] = shot_map
        else:
            logger.warning("Scenelet %s skipped due to missing assets", scenelet_id)

    return manifest


def build_embedded_asset_manifest(
    shots_by_scenelet: Mapping[str, Sequence[ShotRecord]],
    *,
    placeholder: str = DEFAULT_SKIPPED_AUDIO_PLACEHOLDER,
) -> dict[str, dict[int, ShotAssetPaths]]:
    """Like :func:`build_asset_manifest` but keeps the stored media paths as URLs."""

    manifest: dict[str, dict[int, ShotAssetPaths]] = {}
    for scenelet_id, shots in shots_by_scenelet.items():
        shot_map: dict[int, ShotAssetPaths] = {}
        for shot in shots or ():
            image_path = _embedded_path(shot.key_frame_image_path)
            audio_path = (
                _embedded_path(shot.audio_file_path)
                if is_real_audio_path(shot.audio_file_path, placeholder=placeholder)
                else None
            )
            if image_path or audio_path:
                shot_map[shot.shot_index] = ShotAssetPaths(
                    image_path=image_path, audio_path=audio_path
                )
        if shot_map:
            manifest[scenelet_id] = shot_map
    return manifest


def load_embedded_story_bundle(
    story_id: str,
    repository: StoryRepository,
    *,
    exported_at: str | None = None,
    settings: BundleSettings | None = None,
) -> StoryBundle:
    """Assemble a bundle whose media is served in place from ``/generated``.

    Hosts that skip :func:`~storyplayer.bundle_export.export_player_bundle` use
    this to play a story straight from the generated assets tree.
    """

    settings = settings or BundleSettings()
    normalised_id = story_id.strip() if isinstance(story_id, str) else ""
    if not normalised_id:
        raise BundleAssemblyError(
            "Story id must be provided to load embedded story bundle data."
        )

    placeholder = settings.skipped_audio_placeholder
    shots_by_scenelet = repository.get_shots_by_story(normalised_id)
    branch_audio_paths = {
        scenelet.id: _embedded_path(scenelet.branch_audio_path)
        for scenelet in repository.list_scenelets(normalised_id)
        if scenelet.is_branch_point
        and is_real_audio_path(scenelet.branch_audio_path, placeholder=placeholder)
    }

    result = assemble_bundle(
        normalised_id,
        repository,
        shots_by_scenelet=shots_by_scenelet,
        asset_manifest=build_embedded_asset_manifest(
            shots_by_scenelet, placeholder=placeholder
        ),
        branch_audio_paths=branch_audio_paths,
        exported_at=exported_at,
        settings=settings,
    )
    return replace(
        result.bundle, music=remap_music_for_embedded(result.bundle.music, normalised_id)
    )


def build_shot_nodes(assets: SceneletShotAssets) -> tuple[ShotNode, ...]:
    shots: list[ShotNode] = []
    for shot_index in sorted(assets):
        entry = assets[shot_index]
        if not entry.image_path and not entry.audio_path:
            continue
        shots.append(
            ShotNode(
                shot_index=shot_index,
                image_path=entry.image_path,
                audio_path=entry.audio_path,
            )
        )
    return tuple(shots)


def compute_reachable_scenelet_ids(
    root_id: str,
    available_ids: Iterable[str],
    children_by_parent: Mapping[str, Sequence[SceneletRecord]],
) -> set[str]:
    """Breadth-first walk from the root that only steps onto playable children."""

    available = set(available_ids)
    reachable: set[str] = set()
    if root_id not in available:
        return reachable

    queue: deque[str] = deque([root_id])
    while queue:
        current = queue.popleft()
        if current in reachable:
            continue
        reachable.add(current)
        for child in children_by_parent.get(current, ()):
            if child.id in available and child.id not in reachable:
                queue.append(child.id)

    return reachable


def build_scenelet_alias_table(
    shots_by_scenelet: Mapping[str, Sequence[ShotRecord]],
) -> dict[str, str]:
    """Map display aliases carried on shot rows to scenelet record ids."""

    aliases: dict[str, str] = {}
    for scenelet_id, shots in shots_by_scenelet.items():
        for shot in shots:
            alias = (shot.scenelet_alias or "").strip()
            if alias and alias != scenelet_id:
                aliases.setdefault(alias, scenelet_id)
    return aliases


def _build_children_map(
    scenelets: Sequence[SceneletRecord],
) -> dict[str, list[SceneletRecord]]:
    children: dict[str, list[SceneletRecord]] = {}
    for scenelet in scenelets:
        if scenelet.parent_id:
            children.setdefault(scenelet.parent_id, []).append(scenelet)
    return children


def _derive_branch_audio_paths(
    scenelets: Sequence[SceneletRecord], *, placeholder: str
) -> dict[str, str]:
    return {
        scenelet.id: build_branch_audio_relative_path(scenelet.id)
        for scenelet in scenelets
        if scenelet.is_branch_point
        and is_real_audio_path(scenelet.branch_audio_path, placeholder=placeholder)
    }


def _embedded_path(stored_path: str | None) -> str | None:
    trimmed = (stored_path or "").strip().lstrip("/")
    return f"/{trimmed}" if trimmed else None


def _extract_description(scenelet: SceneletRecord) -> str:
    content = scenelet.content
    if isinstance(content, Mapping):
        description = content.get("description")
        if isinstance(description, str) and description.strip():
            return description.strip()
    return f"Scenelet {scenelet.id}"


def _format_timestamp(value: datetime) -> str:
    value = value.astimezone(timezone.utc).replace(microsecond=0)
    return value.isoformat().replace("+00:00", "Z")


__all__ = [
    "AssetManifest",
    "BundleAssemblyError",
    "BundleAssemblyResult",
    "ShotAssetPaths",
    "assemble_bundle",
    "build_asset_manifest",
    "build_audio_relative_path",
    "build_branch_audio_relative_path",
    "build_bundle",
    "build_embedded_asset_manifest",
    "build_image_relative_path",
    "build_scenelet_alias_table",
    "build_shot_nodes",
    "compute_reachable_scenelet_ids",
    "determine_next_state",
    "load_embedded_story_bundle",
]

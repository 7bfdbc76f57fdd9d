"""Write a standalone player bundle directory for a story."""

from __future__ import annotations

import hashlib
import json
import logging
import mimetypes
import os
import shutil
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Iterable, Mapping, Sequence

from .bundle import BundleAssemblyError, StoryBundle
from .bundle_assembler import (
    ShotAssetPaths,
    build_audio_relative_path,
    build_branch_audio_relative_path,
    build_bundle,
    build_image_relative_path,
)
from .music import build_music_relative_path, parse_audio_design_document
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

STORY_FILENAME = "story.json"
MANIFEST_FILENAME = "bundle-manifest.json"
_GENERATED_PREFIX = "generated/"


class BundleExportError(RuntimeError):
    """Raised when a player bundle cannot be written."""


@dataclass(frozen=True)
class ExportedAsset:
    """Metadata describing a single file inside an exported bundle."""

    path: str
    size: int
    checksum: str
    content_type: str | None


@dataclass(frozen=True)
class PlayerBundleExport:
    """Location and contents of an exported player bundle."""

    story_id: str
    output_path: Path
    story_path: Path
    manifest_path: Path
    bundle: StoryBundle
    assets: list[ExportedAsset]
    archive_path: Path | None = None


def export_player_bundle(
    story_id: str,
    repository: StoryRepository,
    output_root: Path | None = None,
    *,
    generated_assets_root: Path | None = None,
    overwrite: bool = False,
    exported_at: datetime | str | None = None,
    archive: bool = False,
    settings: BundleSettings | None = None,
) -> PlayerBundleExport:
    """Copy a story's media next to its ``story.json`` and describe every file.

    The bundle directory is ``<output_root>/<story_id>``. Source media paths are
    resolved against ``generated_assets_root``; both roots fall back to
    :class:`BundleSettings` when omitted.
    """

    settings = settings or BundleSettings()
    normalised_id = story_id.strip() if isinstance(story_id, str) else ""
    if not normalised_id:
        raise BundleExportError("Story id must be provided to create a player bundle.")

    output_root = output_root if output_root is not None else settings.output_root
    if output_root is None:
        raise BundleExportError("An output root must be provided for bundle export.")
    generated_root = (
        generated_assets_root
        if generated_assets_root is not None
        else settings.generated_assets_root
    )
    if generated_root is None:
        raise BundleExportError("A generated assets root must be provided for bundle export.")
    generated_root = Path(generated_root).resolve()

    story = repository.get_story(normalised_id)
    if story is None:
        raise BundleExportError(f"Story {normalised_id} was not found.")

    shots_by_scenelet = repository.get_shots_by_story(normalised_id)
    if not any(shots_by_scenelet.values()):
        raise BundleExportError(
            f"Story {normalised_id} does not have any generated shots."
        )
    scenelets = list(repository.list_scenelets(normalised_id))

    output_root_path = Path(output_root).resolve()
    story_output_dir = output_root_path / normalised_id
    if story_output_dir.exists():
        if not overwrite:
            raise BundleExportError(
                f"Bundle output directory {story_output_dir} already exists. "
                "Re-run with overwrite enabled to replace it."
            )
        shutil.rmtree(story_output_dir)
    story_output_dir.mkdir(parents=True)

    try:
        result = _populate_bundle_directory(
            story,
            scenelets,
            shots_by_scenelet,
            generated_root,
            story_output_dir,
            exported_at=exported_at,
            settings=settings,
        )
    except Exception:
        # A partial directory would block the next export without overwrite.
        shutil.rmtree(story_output_dir, ignore_errors=True)
        raise

    archive_path: Path | None = None
    if archive:
        archive_path = output_root_path / f"{normalised_id}.zip"
        _write_archive(story_output_dir, archive_path)

    logger.debug(
        "Player bundle for %s written to %s with %d files",
        normalised_id,
        story_output_dir,
        len(result.assets),
    )

    return PlayerBundleExport(
        story_id=normalised_id,
        output_path=story_output_dir,
        story_path=result.story_path,
        manifest_path=result.manifest_path,
        bundle=result.bundle,
        assets=result.assets,
        archive_path=archive_path,
    )


@dataclass(frozen=True)
class _PopulatedBundle:
    bundle: StoryBundle
    story_path: Path
    manifest_path: Path
    assets: list[ExportedAsset]


def _populate_bundle_directory(
    story: StoryRecord,
    scenelets: Sequence[SceneletRecord],
    shots_by_scenelet: Mapping[str, Sequence[ShotRecord]],
    generated_root: Path,
    story_output_dir: Path,
    *,
    exported_at: datetime | str | None,
    settings: BundleSettings,
) -> _PopulatedBundle:
    normalised_id = story.id
    placeholder = settings.skipped_audio_placeholder
    asset_manifest = copy_shot_assets(
        shots_by_scenelet, generated_root, story_output_dir, placeholder=placeholder
    )
    if not asset_manifest:
        raise BundleExportError(
            f"Story {normalised_id} does not have any playable assets. "
            "Complete shot generation before bundling."
        )
    branch_audio_paths = copy_branch_audio(
        scenelets, generated_root, story_output_dir, placeholder=placeholder
    )

    try:
        cues = parse_audio_design_document(story.audio_design_document)
        copy_music_assets(
            normalised_id,
            [cue.cue_name for cue in cues if cue.cue_name],
            generated_root,
            story_output_dir,
        )
        result = build_bundle(
            story,
            scenelets,
            shots_by_scenelet,
            asset_manifest=asset_manifest,
            branch_audio_paths=branch_audio_paths,
            exported_at=_format_exported_at(exported_at),
            settings=settings,
        )
    except BundleAssemblyError as exc:
        raise BundleExportError(str(exc)) from exc

    bundle = result.bundle
    validate_asset_references(story_output_dir, bundle)

    story_path = story_output_dir / STORY_FILENAME
    story_path.write_text(
        json.dumps(bundle.to_payload(), indent=2, ensure_ascii=False) + "\n",
        encoding="utf-8",
    )

    assets = [
        _describe_file(story_output_dir, file_path)
        for file_path in sorted(_iter_files(story_output_dir))
    ]
    manifest_path = story_output_dir / MANIFEST_FILENAME
    manifest_payload = {
        "story_id": normalised_id,
        "exported_at": bundle.metadata.exported_at,
        "assets": [
            {
                "path": asset.path,
                "size": asset.size,
                "checksum": asset.checksum,
                "content_type": asset.content_type,
            }
            for asset in assets
        ],
    }
    manifest_path.write_text(
        json.dumps(manifest_payload, indent=2, sort_keys=True, ensure_ascii=False)
        + "\n",
        encoding="utf-8",
    )

    return _PopulatedBundle(
        bundle=bundle, story_path=story_path, manifest_path=manifest_path, assets=assets
    )


def copy_shot_assets(
    shots_by_scenelet: Mapping[str, Sequence[ShotRecord]],
    generated_root: Path,
    story_output_dir: Path,
    *,
    placeholder: str = DEFAULT_SKIPPED_AUDIO_PLACEHOLDER,
) -> dict[str, dict[int, ShotAssetPaths]]:
    """Copy shot media into ``assets/shots`` and return what actually landed."""

    manifest: dict[str, dict[int, ShotAssetPaths]] = {}
    for scenelet_id, shots in shots_by_scenelet.items():
        if not shots:
            continue
        if not scenelet_id or not scenelet_id.strip():
            logger.warning("Skipping scenelet with invalid id during asset copy")
            continue

        shot_assets: dict[int, ShotAssetPaths] = {}
        for shot in shots:
            if shot.shot_index < 0:
                continue

            image_path = _copy_if_present(
                generated_root,
                shot.key_frame_image_path,
                story_output_dir,
                build_image_relative_path(scenelet_id, shot.shot_index),
                placeholder=None,
                label=f"shot image {scenelet_id}#{shot.shot_index}",
            )
            audio_path = _copy_if_present(
                generated_root,
                shot.audio_file_path,
                story_output_dir,
                build_audio_relative_path(scenelet_id, shot.shot_index),
                placeholder=placeholder,
                label=f"shot audio {scenelet_id}#{shot.shot_index}",
            )
            if image_path or audio_path:
                shot_assets[shot.shot_index] = ShotAssetPaths(
                    image_path=image_path, audio_path=audio_path
                )

        if shot_assets:
            manifest[scenelet_id] = shot_assets
        else:
            logger.warning("Scenelet %s skipped due to missing assets", scenelet_id)

    return manifest


def copy_branch_audio(
    scenelets: Iterable[SceneletRecord],
    generated_root: Path,
    story_output_dir: Path,
    *,
    placeholder: str = DEFAULT_SKIPPED_AUDIO_PLACEHOLDER,
) -> dict[str, str]:
    """Copy branch-point preview audio and return bundle paths by scenelet id."""

    copied: dict[str, str] = {}
    for scenelet in scenelets:
        if not scenelet.is_branch_point:
            continue
        relative = _copy_if_present(
            generated_root,
            scenelet.branch_audio_path,
            story_output_dir,
            build_branch_audio_relative_path(scenelet.id),
            placeholder=placeholder,
            label=f"branch audio {scenelet.id}",
        )
        if relative:
            copied[scenelet.id] = relative
    return copied


def copy_music_assets(
    story_id: str,
    cue_names: Iterable[str],
    generated_root: Path,
    story_output_dir: Path,
) -> list[str]:
    """Copy ``<root>/<story_id>/music/<cue>.m4a`` files into ``assets/music``."""

    source_dir = generated_root / story_id / "music"
    copied: list[str] = []
    seen: set[str] = set()
    for raw_name in cue_names:
        cue_name = raw_name.strip()
        if not cue_name or cue_name in seen:
            continue
        seen.add(cue_name)

        source = source_dir / f"{cue_name}.m4a"
        if not source.is_file():
            logger.warning("Missing music cue asset %s for story %s", source, story_id)
            continue

        relative = build_music_relative_path(cue_name)
        target = story_output_dir / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        copied.append(relative)
    return copied


def validate_asset_references(story_output_dir: Path, bundle: StoryBundle) -> None:
    """Ensure every shot and branch-audio path in ``bundle`` exists on disk."""

    for node in bundle.scenelets:
        referenced = [
            path
            for shot in node.shots
            for path in (shot.image_path, shot.audio_path)
            if path
        ]
        if node.branch_audio_path:
            referenced.append(node.branch_audio_path)
        for relative in referenced:
            target = story_output_dir / relative
            if not target.is_file():
                raise BundleExportError(
                    f"Bundle validation failed: required asset {target} is missing after copy."
                )


def resolve_source_path(
    root: Path, relative_path: str | None, *, placeholder: str | None = None
) -> Path | None:
    """Map a stored media path onto ``root``; ``None`` when it cannot be used."""

    if not relative_path:
        return None
    trimmed = relative_path.strip()
    if not trimmed:
        return None
    if placeholder is not None and not is_real_audio_path(trimmed, placeholder=placeholder):
        return None

    if trimmed.startswith(_GENERATED_PREFIX):
        trimmed = trimmed[len(_GENERATED_PREFIX):]
    normalised = PurePosixPath(os.path.normpath(trimmed).replace(os.sep, "/"))
    if normalised.is_absolute() or normalised.parts[:1] == ("..",):
        return None
    return root.joinpath(*normalised.parts)


def _copy_if_present(
    generated_root: Path,
    stored_path: str | None,
    story_output_dir: Path,
    relative_target: str,
    *,
    placeholder: str | None,
    label: str,
) -> str | None:
    source = resolve_source_path(generated_root, stored_path, placeholder=placeholder)
    if source is None:
        return None
    if not source.is_file():
        logger.warning("Missing %s at %s", label, source)
        return None

    target = story_output_dir / relative_target
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, target)
    return relative_target


def _iter_files(root: Path) -> Iterable[Path]:
    for current_root, _, filenames in os.walk(root):
        current_path = Path(current_root)
        for filename in sorted(filenames):
            file_path = current_path / filename
            if file_path.is_file():
                yield file_path


def _describe_file(root: Path, file_path: Path) -> ExportedAsset:
    content_type, _ = mimetypes.guess_type(file_path.name)
    return ExportedAsset(
        path=file_path.relative_to(root).as_posix(),
        size=file_path.stat().st_size,
        checksum=_compute_checksum(file_path),
        content_type=content_type,
    )


def _compute_checksum(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as stream:
        for chunk in iter(lambda: stream.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _write_archive(source_dir: Path, archive_path: Path) -> None:
    with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED) as bundle_zip:
        for file_path in sorted(_iter_files(source_dir)):
            bundle_zip.write(
                file_path,
                arcname=(Path(source_dir.name) / file_path.relative_to(source_dir)).as_posix(),
            )


def _format_exported_at(value: datetime | str | None) -> str | None:
    if value is None or isinstance(value, str):
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc).replace(microsecond=0)
    return value.isoformat().replace("+00:00", "Z")


__all__ = [
    "BundleExportError",
    "ExportedAsset",
    "MANIFEST_FILENAME",
    "PlayerBundleExport",
    "STORY_FILENAME",
    "copy_branch_audio",
    "copy_music_assets",
    "copy_shot_assets",
    "export_player_bundle",
    "resolve_source_path",
    "validate_asset_references",
]

"""Test configuration for the story player project."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from typing import Any, Callable

import pytest

from storyplayer.records import (
    InMemoryStoryRepository,
    SceneletRecord,
    ShotRecord,
    StoryRecord,
    StorySnapshot,
)
from storyplayer.testing_toolkit import FakeScheduler


def _build_scenelet(
    scenelet_id: str,
    parent_id: str | None = None,
    *,
    label: str | None = None,
    prompt: str | None = None,
    branch: bool = False,
    terminal: bool = False,
    created_at: str | None = "2024-01-01T00:00:00Z",
    description: str | None = None,
    branch_audio_path: str | None = None,
) -> SceneletRecord:
    """Build a scenelet record with sensible defaults for tests."""

    content = {"description": description} if description is not None else {}
    return SceneletRecord(
        id=scenelet_id,
        parent_id=parent_id,
        choice_label_from_parent=label,
        choice_prompt=prompt,
        content=content,
        is_branch_point=branch,
        is_terminal_node=terminal,
        created_at=created_at,
        branch_audio_path=branch_audio_path,
    )


def _build_shots(
    scenelet_id: str,
    count: int = 1,
    *,
    image: bool = True,
    audio: bool | str = True,
    alias: str | None = None,
) -> list[ShotRecord]:
    """Build ``count`` shots; ``audio`` may be a literal path such as ``SKIPPED``."""

    shots = []
    for index in range(1, count + 1):
        if isinstance(audio, str):
            audio_path: str | None = audio
        elif audio:
            audio_path = f"generated/story-1/{scenelet_id}/{index}.wav"
        else:
            audio_path = None
        shots.append(
            ShotRecord(
                scenelet_ref=scenelet_id,
                shot_index=index,
                key_frame_image_path=(
                    f"generated/story-1/{scenelet_id}/{index}.png" if image else None
                ),
                audio_file_path=audio_path,
                scenelet_alias=alias,
            )
        )
    return shots


@pytest.fixture()
def make_scenelet() -> Callable[..., SceneletRecord]:
    """Factory fixture for scenelet records."""

    return _build_scenelet


@pytest.fixture()
def make_shots() -> Callable[..., list[ShotRecord]]:
    """Factory fixture for shot records."""

    return _build_shots


@pytest.fixture()
def fake_scheduler() -> FakeScheduler:
    """Return a manual clock for driving player timers."""

    return FakeScheduler()


@pytest.fixture()
def make_repository() -> Callable[..., InMemoryStoryRepository]:
    """Factory fixture building an in-memory repository for a single story."""

    def _factory(
        scenelets: list[SceneletRecord],
        shots: dict[str, list[ShotRecord]],
        *,
        story_id: str = "story-1",
        title: str | None = "The Lighthouse",
        audio_design_document: Any = None,
    ) -> InMemoryStoryRepository:
        return InMemoryStoryRepository(
            [
                StorySnapshot(
                    story=StoryRecord(
                        id=story_id,
                        title=title,
                        audio_design_document=audio_design_document,
                    ),
                    scenelets=list(scenelets),
                    shots_by_scenelet=dict(shots),
                )
            ]
        )

    return _factory


__all__ = ["fake_scheduler", "make_repository", "make_scenelet", "make_shots"]

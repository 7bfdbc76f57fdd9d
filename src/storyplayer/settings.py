"""Configuration helpers for bundle assembly and playback timing."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .records import DEFAULT_SKIPPED_AUDIO_PLACEHOLDER


def _normalise_path(value: str | None) -> Path | None:
    if value is None:
        return None

    trimmed = value.strip()
    if not trimmed:
        return None

    return Path(trimmed).expanduser()


def _normalise_string(value: str | None, *, default: str) -> str:
    if value is None:
        return default

    trimmed = value.strip()
    return trimmed or default


def _parse_seconds(value: str | None, *, name: str, default: float) -> float:
    if value is None:
        return default

    trimmed = value.strip()
    if not trimmed:
        return default

    try:
        parsed = float(trimmed)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number of seconds.") from exc
    if parsed < 0:
        raise ValueError(f"{name} must not be negative.")
    return parsed


@dataclass(frozen=True)
class PlayerSettings:
    """Fixed holds bracketing each shot during playback.

    ``ramp_up_seconds`` and ``ramp_down_seconds`` frame a shot's narration so a
    host can run transition effects. ``no_audio_hold_seconds`` replaces the
    narration for image-only shots so they stay on screen before advancing.
    """

    ramp_up_seconds: float = 0.5
    ramp_down_seconds: float = 0.5
    no_audio_hold_seconds: float = 3.0

    def __post_init__(self) -> None:
        for name in ("ramp_up_seconds", "ramp_down_seconds", "no_audio_hold_seconds"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "PlayerSettings":
        """Return settings populated from ``STORYPLAYER_*`` variables."""

        source = environ if environ is not None else os.environ
        defaults = cls()
        return cls(
            ramp_up_seconds=_parse_seconds(
                source.get("STORYPLAYER_RAMP_UP_SECONDS"),
                name="STORYPLAYER_RAMP_UP_SECONDS",
                default=defaults.ramp_up_seconds,
            ),
            ramp_down_seconds=_parse_seconds(
                source.get("STORYPLAYER_RAMP_DOWN_SECONDS"),
                name="STORYPLAYER_RAMP_DOWN_SECONDS",
                default=defaults.ramp_down_seconds,
            ),
            no_audio_hold_seconds=_parse_seconds(
                source.get("STORYPLAYER_NO_AUDIO_HOLD_SECONDS"),
                name="STORYPLAYER_NO_AUDIO_HOLD_SECONDS",
                default=defaults.no_audio_hold_seconds,
            ),
        )


@dataclass(frozen=True)
class BundleSettings:
    """Settings shared by bundle assembly and export.

    Paths are expanded to support ``~`` prefixes while empty strings are treated
    as if the variable was unset.
    """

    skipped_audio_placeholder: str = DEFAULT_SKIPPED_AUDIO_PLACEHOLDER
    default_title: str = "Untitled Story"
    generated_assets_root: Path | None = None
    output_root: Path | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "BundleSettings":
        source = environ if environ is not None else os.environ
        return cls(
            skipped_audio_placeholder=_normalise_string(
                source.get("STORYPLAYER_SKIPPED_AUDIO_PLACEHOLDER"),
                default=DEFAULT_SKIPPED_AUDIO_PLACEHOLDER,
            ),
            default_title=_normalise_string(
                source.get("STORYPLAYER_DEFAULT_TITLE"), default="Untitled Story"
            ),
            generated_assets_root=_normalise_path(
                source.get("STORYPLAYER_GENERATED_ASSETS_ROOT")
            ),
            output_root=_normalise_path(source.get("STORYPLAYER_OUTPUT_ROOT")),
        )


__all__ = ["BundleSettings", "PlayerSettings"]

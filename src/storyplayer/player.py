"""Deterministic playback controller for story bundles.

The controller walks a :class:`~storyplayer.bundle.StoryBundle` shot by shot and
reports progress through typed events. It never plays media itself: hosts
subscribe to events, drive their own image and audio elements, and report
narration completion back through :meth:`PlayerController.notify_shot_audio_complete`.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Mapping, Union

from .bundle import (
    BranchChoice,
    BranchNext,
    BundleNode,
    IncompleteNext,
    InvalidBundleError,
    LinearNext,
    ShotNode,
    StoryBundle,
    TerminalNext,
    transition_targets,
)
from .scheduling import Scheduler, ThreadingScheduler, TimerHandle
from .settings import PlayerSettings


class PlayerStateError(RuntimeError):
    """Raised when a controller operation is invalid for the current stage."""


class PlayerStage(str, Enum):
    """Playback stages reported through ``stage-change`` events."""

    IDLE = "idle"
    RAMP_UP = "ramp-up"
    AUDIO = "audio"
    RAMP_DOWN = "ramp-down"
    CHOICE = "choice"
    TERMINAL = "terminal"
    INCOMPLETE = "incomplete"


_PAUSABLE_STAGES = frozenset({PlayerStage.RAMP_UP, PlayerStage.AUDIO, PlayerStage.RAMP_DOWN})


@dataclass(frozen=True)
class StageChangeEvent:
    stage: PlayerStage
    type: ClassVar[str] = "stage-change"


@dataclass(frozen=True)
class SceneletEnterEvent:
    scenelet_id: str
    scenelet: BundleNode
    type: ClassVar[str] = "scenelet-enter"


@dataclass(frozen=True)
class ShotEnterEvent:
    scenelet_id: str
    shot_index: int
    shot: ShotNode
    type: ClassVar[str] = "shot-enter"


@dataclass(frozen=True)
class AudioStartEvent:
    """Narration for the current shot should start.

    ``requires_user_interaction`` is true only for the first narration of a
    session, when hosts may need a user gesture before audio can play.
    """

    scenelet_id: str
    shot_index: int
    shot: ShotNode
    audio_path: str
    requires_user_interaction: bool
    type: ClassVar[str] = "audio-start"


@dataclass(frozen=True)
class AudioMissingEvent:
    scenelet_id: str
    shot_index: int
    shot: ShotNode
    type: ClassVar[str] = "audio-missing"


@dataclass(frozen=True)
class BranchEvent:
    scenelet_id: str
    prompt: str
    choices: tuple[BranchChoice, ...]
    type: ClassVar[str] = "branch"


@dataclass(frozen=True)
class TerminalEvent:
    scenelet_id: str
    type: ClassVar[str] = "terminal"


@dataclass(frozen=True)
class IncompleteEvent:
    scenelet_id: str
    type: ClassVar[str] = "incomplete"


@dataclass(frozen=True)
class PauseChangeEvent:
    is_paused: bool
    type: ClassVar[str] = "pause-change"


@dataclass(frozen=True)
class MusicChangeEvent:
    """Background music should switch; ``None`` values mean fade out."""

    cue_name: str | None
    audio_path: str | None
    type: ClassVar[str] = "music-change"


@dataclass(frozen=True)
class BranchAudioEvent:
    scenelet_id: str
    audio_path: str
    type: ClassVar[str] = "branch-audio"


@dataclass(frozen=True)
class BranchAudioStopEvent:
    scenelet_id: str
    type: ClassVar[str] = "branch-audio-stop"


PlayerEvent = Union[
    StageChangeEvent,
    SceneletEnterEvent,
    ShotEnterEvent,
    AudioStartEvent,
    AudioMissingEvent,
    BranchEvent,
    TerminalEvent,
    IncompleteEvent,
    PauseChangeEvent,
    MusicChangeEvent,
    BranchAudioEvent,
    BranchAudioStopEvent,
]
EventListener = Callable[[PlayerEvent], None]

EVENT_TYPES: tuple[str, ...] = (
    StageChangeEvent.type,
    SceneletEnterEvent.type,
    ShotEnterEvent.type,
    AudioStartEvent.type,
    AudioMissingEvent.type,
    BranchEvent.type,
    TerminalEvent.type,
    IncompleteEvent.type,
    PauseChangeEvent.type,
    MusicChangeEvent.type,
    BranchAudioEvent.type,
    BranchAudioStopEvent.type,
)


@dataclass(frozen=True)
class PlayerState:
    """Snapshot returned by :meth:`PlayerController.get_state`."""

    stage: PlayerStage
    is_paused: bool
    current_scenelet_id: str | None
    current_shot_index: int
    pending_choices: tuple[BranchChoice, ...] | None
    current_cue: str | None


def validate_bundle(bundle: StoryBundle | Mapping[str, Any]) -> StoryBundle:
    """Return ``bundle`` as a :class:`StoryBundle` after structural checks.

    Mappings are parsed with :meth:`StoryBundle.from_payload`. Raises
    :class:`InvalidBundleError` on the first problem found.
    """

    if isinstance(bundle, Mapping):
        bundle = StoryBundle.from_payload(bundle)
    if not isinstance(bundle, StoryBundle):
        raise InvalidBundleError("Story JSON must contain an object.")

    if not bundle.root_scenelet_id:
        raise InvalidBundleError("Story JSON missing root_scenelet_id.")
    if not bundle.scenelets:
        raise InvalidBundleError("Story JSON missing scenelets array.")

    scenelet_ids: set[str] = set()
    for node in bundle.scenelets:
        if not isinstance(node.id, str) or not node.id.strip():
            raise InvalidBundleError("Scenelet missing id field.")
        if node.id in scenelet_ids:
            raise InvalidBundleError(f"Duplicate scenelet id detected: {node.id}")
        scenelet_ids.add(node.id)

        if not node.shots:
            raise InvalidBundleError(f"Scenelet {node.id} is missing playable shots.")
        for shot in node.shots:
            if isinstance(shot.shot_index, bool) or not isinstance(shot.shot_index, int):
                raise InvalidBundleError(f"Scenelet {node.id} shot is missing shot_index.")

    if bundle.root_scenelet_id not in scenelet_ids:
        raise InvalidBundleError(
            f"Story root scenelet {bundle.root_scenelet_id} does not exist in scenelets array."
        )

    for node in bundle.scenelets:
        next_node = node.next
        if isinstance(next_node, BranchNext) and not next_node.choices:
            raise InvalidBundleError(f"Scenelet {node.id} has a branch without choices.")
        try:
            targets = transition_targets(next_node)
        except TypeError as exc:
            raise InvalidBundleError(
                f"Scenelet {node.id} missing next transition configuration."
            ) from exc
        for target in targets:
            if target not in scenelet_ids:
                raise InvalidBundleError(
                    f"Scenelet {node.id} references missing scenelet {target}."
                )

    return bundle


class PlayerController:
    """Event-driven state machine that plays a bundle shot by shot.

    At most one advance timer and one branch-preview timer are live at a
    time. Pausing cancels the advance timer but keeps its action; resuming
    runs that action immediately rather than waiting out the remaining delay.
    """

    def __init__(
        self,
        bundle: StoryBundle | Mapping[str, Any],
        *,
        scheduler: Scheduler | None = None,
        settings: PlayerSettings | None = None,
    ) -> None:
        self._bundle = validate_bundle(bundle)
        self._nodes = self._bundle.node_map()
        self._scheduler = scheduler or ThreadingScheduler()
        self._settings = settings or PlayerSettings()
        self._listeners: Dict[str, List[EventListener]] = {}
        self._lock = threading.RLock()

        self._stage = PlayerStage.IDLE
        self._is_paused = False
        self._current_scenelet_id: str | None = None
        self._current_shot_index = 0
        self._pending_choices: tuple[BranchChoice, ...] | None = None
        self._current_cue: str | None = None
        self._initial_audio_unlock_pending = True

        self._timer: TimerHandle | None = None
        self._pending_action: Callable[[], None] | None = None
        self._deferred_audio_complete = False
        self._branch_audio_timer: TimerHandle | None = None
        self._active_branch_audio_scenelet_id: str | None = None

    @property
    def bundle(self) -> StoryBundle:
        return self._bundle

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def subscribe(self, event_type: str, listener: EventListener) -> Callable[[], None]:
        """Register ``listener`` for one event type and return an unsubscribe callable."""

        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown player event type: {event_type}")
        if not callable(listener):
            raise TypeError("listener must be callable")

        with self._lock:
            bucket = self._listeners.setdefault(event_type, [])
            bucket.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in bucket:
                    bucket.remove(listener)

        return unsubscribe

    def start(self) -> None:
        with self._lock:
            self._reset_playback_state()
            self._play_scenelet(self._bundle.root_scenelet_id)

    def restart(self) -> None:
        self.start()

    def pause(self) -> None:
        with self._lock:
            if self._is_paused or self._stage not in _PAUSABLE_STAGES:
                return
            self._is_paused = True
            self._cancel_timer()
            self._emit(PauseChangeEvent(is_paused=True))

    def resume(self) -> None:
        with self._lock:
            if not self._is_paused or self._stage not in _PAUSABLE_STAGES:
                return
            self._is_paused = False
            self._emit(PauseChangeEvent(is_paused=False))
            action = self._pending_action
            if action is not None:
                self._pending_action = None
                action()

    def choose_branch(self, scenelet_id: str) -> None:
        """Continue playback with the chosen branch target."""

        with self._lock:
            if self._stage is not PlayerStage.CHOICE:
                raise PlayerStateError(
                    "Cannot choose a branch when no branching options are active."
                )

            target_id = scenelet_id.strip() if isinstance(scenelet_id, str) else ""
            if not target_id:
                raise ValueError("Branch selection requires a valid scenelet id.")

            current = self._nodes.get(self._current_scenelet_id or "")
            offered = (
                {choice.scenelet_id for choice in current.next.choices}
                if current is not None and isinstance(current.next, BranchNext)
                else set()
            )
            if target_id not in offered or target_id not in self._nodes:
                raise ValueError(
                    f"Scenelet {target_id} is not one of the offered branch choices."
                )

            self._stop_branch_audio()
            self._pending_choices = None
            if self._is_paused:
                self._is_paused = False
                self._emit(PauseChangeEvent(is_paused=False))
            self._play_scenelet(target_id)

    def notify_shot_audio_complete(self) -> None:
        with self._lock:
            self._handle_audio_complete()

    def notify_shot_audio_error(self) -> None:
        # A failed narration moves on exactly like a finished one.
        with self._lock:
            self._handle_audio_complete()

    def get_state(self) -> PlayerState:
        with self._lock:
            return PlayerState(
                stage=self._stage,
                is_paused=self._is_paused,
                current_scenelet_id=self._current_scenelet_id,
                current_shot_index=self._current_shot_index,
                pending_choices=(
                    tuple(self._pending_choices)
                    if self._pending_choices is not None
                    else None
                ),
                current_cue=self._current_cue,
            )

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------
    def _play_scenelet(self, scenelet_id: str) -> None:
        self._stop_branch_audio()
        node = self._nodes.get(scenelet_id)
        if node is None:
            raise InvalidBundleError(f"Scenelet {scenelet_id} is missing from story data.")

        self._current_scenelet_id = scenelet_id
        self._current_shot_index = 0
        self._emit_music_cue(scenelet_id)
        self._emit(SceneletEnterEvent(scenelet_id=scenelet_id, scenelet=node))
        self._play_shot(node, 0)

    def _play_shot(self, node: BundleNode, position: int) -> None:
        shot = node.shots[position]
        self._current_scenelet_id = node.id
        self._current_shot_index = position
        self._is_paused = False
        self._pending_choices = None
        self._deferred_audio_complete = False
        self._set_stage(PlayerStage.RAMP_UP)
        self._emit(ShotEnterEvent(scenelet_id=node.id, shot_index=position, shot=shot))
        self._schedule_action(
            lambda: self._on_ramp_up_complete(node, shot),
            self._settings.ramp_up_seconds,
        )

    def _on_ramp_up_complete(self, node: BundleNode, shot: ShotNode) -> None:
        self._set_stage(PlayerStage.AUDIO)
        if shot.audio_path:
            self._emit(
                AudioStartEvent(
                    scenelet_id=node.id,
                    shot_index=self._current_shot_index,
                    shot=shot,
                    audio_path=shot.audio_path,
                    requires_user_interaction=self._initial_audio_unlock_pending,
                )
            )
            self._initial_audio_unlock_pending = False
        else:
            self._emit(
                AudioMissingEvent(
                    scenelet_id=node.id,
                    shot_index=self._current_shot_index,
                    shot=shot,
                )
            )
            self._schedule_action(
                self._handle_audio_complete, self._settings.no_audio_hold_seconds
            )

        if self._deferred_audio_complete:
            self._deferred_audio_complete = False
            self._handle_audio_complete()

    def _handle_audio_complete(self) -> None:
        if self._current_scenelet_id is None:
            return
        if self._stage is PlayerStage.RAMP_UP:
            # Replayed once the ramp-up hold elapses.
            self._deferred_audio_complete = True
            return
        if self._stage is not PlayerStage.AUDIO:
            return

        self._set_stage(PlayerStage.RAMP_DOWN)
        self._schedule_action(self._advance_after_shot, self._settings.ramp_down_seconds)

    def _advance_after_shot(self) -> None:
        node = self._nodes.get(self._current_scenelet_id or "")
        if node is None:
            return

        next_position = self._current_shot_index + 1
        if next_position < len(node.shots):
            self._play_shot(node, next_position)
            return

        next_node = node.next
        if isinstance(next_node, LinearNext):
            self._play_scenelet(next_node.scenelet_id)
        elif isinstance(next_node, BranchNext):
            self._stage = PlayerStage.CHOICE
            self._is_paused = True
            self._pending_choices = tuple(next_node.choices)
            self._emit(PauseChangeEvent(is_paused=True))
            self._emit(
                BranchEvent(
                    scenelet_id=node.id,
                    prompt=next_node.choice_prompt,
                    choices=tuple(next_node.choices),
                )
            )
            self._emit(StageChangeEvent(stage=PlayerStage.CHOICE))
            self._schedule_branch_audio(node)
        elif isinstance(next_node, TerminalNext):
            self._stage = PlayerStage.TERMINAL
            self._is_paused = True
            self._emit(PauseChangeEvent(is_paused=True))
            self._emit(TerminalEvent(scenelet_id=node.id))
            self._emit(StageChangeEvent(stage=PlayerStage.TERMINAL))
        elif isinstance(next_node, IncompleteNext):
            self._stage = PlayerStage.INCOMPLETE
            self._is_paused = True
            self._emit(PauseChangeEvent(is_paused=True))
            self._emit(IncompleteEvent(scenelet_id=node.id))
            self._emit(StageChangeEvent(stage=PlayerStage.INCOMPLETE))
        else:
            raise InvalidBundleError(
                f"Scenelet {node.id} has unsupported next transition {next_node!r}."
            )

    # ------------------------------------------------------------------
    # Music and branch preview
    # ------------------------------------------------------------------
    def _emit_music_cue(self, scenelet_id: str) -> None:
        cue_name = self._bundle.music.scenelet_cue_map.get(scenelet_id)
        if cue_name == self._current_cue:
            return

        cue = self._bundle.music.cue_for(scenelet_id)
        self._current_cue = cue_name
        self._emit(
            MusicChangeEvent(
                cue_name=cue_name,
                audio_path=cue.audio_path if cue is not None else None,
            )
        )

    def _schedule_branch_audio(self, node: BundleNode) -> None:
        self._cancel_branch_audio_timer()
        audio_path = node.branch_audio_path
        if not audio_path:
            self._active_branch_audio_scenelet_id = None
            return

        def fire() -> None:
            with self._lock:
                if self._branch_audio_timer is not handle_box[0]:
                    return
                self._branch_audio_timer = None
                if self._stage is not PlayerStage.CHOICE:
                    return
                self._active_branch_audio_scenelet_id = node.id
                self._emit(BranchAudioEvent(scenelet_id=node.id, audio_path=audio_path))

        handle_box: list[TimerHandle | None] = [None]
        handle = self._scheduler.schedule(fire, self._settings.ramp_up_seconds)
        handle_box[0] = handle
        self._branch_audio_timer = handle

    def _cancel_branch_audio_timer(self) -> None:
        if self._branch_audio_timer is not None:
            self._branch_audio_timer.cancel()
            self._branch_audio_timer = None

    def _stop_branch_audio(self) -> None:
        self._cancel_branch_audio_timer()
        if self._active_branch_audio_scenelet_id is not None:
            scenelet_id = self._active_branch_audio_scenelet_id
            self._active_branch_audio_scenelet_id = None
            self._emit(BranchAudioStopEvent(scenelet_id=scenelet_id))

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------
    def _reset_playback_state(self) -> None:
        self._cancel_timer()
        self._stop_branch_audio()
        self._pending_action = None
        self._deferred_audio_complete = False
        self._current_scenelet_id = None
        self._current_shot_index = 0
        self._pending_choices = None
        self._initial_audio_unlock_pending = True

        self._set_stage(PlayerStage.IDLE)
        if self._is_paused:
            self._is_paused = False
            self._emit(PauseChangeEvent(is_paused=False))
        if self._current_cue is not None:
            self._current_cue = None
            self._emit(MusicChangeEvent(cue_name=None, audio_path=None))

    def _schedule_action(self, action: Callable[[], None], delay_seconds: float) -> None:
        self._cancel_timer()
        self._pending_action = action
        if self._is_paused:
            return

        def fire() -> None:
            with self._lock:
                if self._timer is not handle_box[0]:
                    return
                self._timer = None
                pending = self._pending_action
                self._pending_action = None
                if pending is not None:
                    pending()

        handle_box: list[TimerHandle | None] = [None]
        handle = self._scheduler.schedule(fire, delay_seconds)
        handle_box[0] = handle
        self._timer = handle

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _set_stage(self, stage: PlayerStage) -> None:
        if self._stage is stage:
            return
        self._stage = stage
        self._emit(StageChangeEvent(stage=stage))

    def _emit(self, event: PlayerEvent) -> None:
        for listener in tuple(self._listeners.get(event.type, ())):
            listener(event)


def create_player_controller(
    bundle: StoryBundle | Mapping[str, Any],
    *,
    scheduler: Scheduler | None = None,
    settings: PlayerSettings | None = None,
) -> PlayerController:
    """Validate ``bundle`` and return a controller ready to :meth:`~PlayerController.start`."""

    return PlayerController(bundle, scheduler=scheduler, settings=settings)


__all__ = [
    "AudioMissingEvent",
    "AudioStartEvent",
    "BranchAudioEvent",
    "BranchAudioStopEvent",
    "BranchEvent",
    "EVENT_TYPES",
    "EventListener",
    "IncompleteEvent",
    "MusicChangeEvent",
    "PauseChangeEvent",
    "PlayerController",
    "PlayerEvent",
    "PlayerStage",
    "PlayerState",
    "PlayerStateError",
    "SceneletEnterEvent",
    "ShotEnterEvent",
    "StageChangeEvent",
    "TerminalEvent",
    "create_player_controller",
    "validate_bundle",
]

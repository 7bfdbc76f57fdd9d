"""Tests for the bundle playback controller."""

from __future__ import annotations

import pytest

from storyplayer.bundle import (
    BranchChoice,
    BranchNext,
    BundleMetadata,
    BundleNode,
    IncompleteNext,
    InvalidBundleError,
    LinearNext,
    MusicCue,
    MusicManifest,
    ShotNode,
    StoryBundle,
    TerminalNext,
)
from storyplayer.player import (
    PlayerController,
    PlayerStage,
    PlayerStateError,
    create_player_controller,
    validate_bundle,
)
from storyplayer.settings import PlayerSettings
from storyplayer.testing_toolkit import EventRecorder, FakeScheduler


def _shot(index: int, audio: bool = True) -> ShotNode:
    return ShotNode(
        shot_index=index,
        image_path=f"assets/shots/x/{index}_key_frame.png",
        audio_path=f"assets/shots/x/{index}_audio.wav" if audio else None,
    )


def _bundle(*nodes: BundleNode, root: str = "root", music: MusicManifest | None = None) -> StoryBundle:
    return StoryBundle(
        metadata=BundleMetadata(
            story_id="story-1", title="The Lighthouse", exported_at="2024-05-05T12:30:00Z"
        ),
        root_scenelet_id=root,
        scenelets=nodes,
        music=music or MusicManifest(),
    )


def _linear_bundle() -> StoryBundle:
    return _bundle(
        BundleNode("root", "Opening", (_shot(1),), LinearNext("end")),
        BundleNode("end", "Ending", (_shot(1, audio=False),), TerminalNext()),
    )


def _branch_bundle(branch_audio_path: str | None = None) -> StoryBundle:
    return _bundle(
        BundleNode(
            "root",
            "Crossroads",
            (_shot(1, audio=False),),
            BranchNext(
                "Which way?",
                (BranchChoice("Left", "left"), BranchChoice("Right", "right")),
            ),
            branch_audio_path=branch_audio_path,
        ),
        BundleNode("left", "Left path", (_shot(1),), TerminalNext()),
        BundleNode("right", "Right path", (_shot(1),), IncompleteNext()),
    )


def _drive(controller: PlayerController, scheduler: FakeScheduler, *, limit: int = 100) -> None:
    """Play until nothing is left to do, finishing narration as soon as it starts."""

    for _ in range(limit):
        state = controller.get_state()
        if state.stage is PlayerStage.AUDIO and not scheduler.pending:
            controller.notify_shot_audio_complete()
        elif not scheduler.run_next():
            return
    raise AssertionError("playback did not settle")


@pytest.fixture
def linear_player(fake_scheduler: FakeScheduler) -> PlayerController:
    return create_player_controller(_linear_bundle(), scheduler=fake_scheduler)


def test_two_node_story_emits_expected_sequence(
    linear_player: PlayerController, fake_scheduler: FakeScheduler
) -> None:
    recorder = EventRecorder(linear_player)

    linear_player.start()
    assert recorder.labels() == [
        "scenelet-enter(root)",
        "stage-change(ramp-up)",
        "shot-enter(root)",
    ]

    recorder.clear()
    fake_scheduler.advance(0.5)
    assert recorder.labels() == ["stage-change(audio)", "audio-start(root)"]

    recorder.clear()
    linear_player.notify_shot_audio_complete()
    assert recorder.labels() == ["stage-change(ramp-down)"]

    recorder.clear()
    fake_scheduler.advance(0.5)
    assert recorder.labels() == [
        "scenelet-enter(end)",
        "stage-change(ramp-up)",
        "shot-enter(end)",
    ]

    recorder.clear()
    fake_scheduler.advance(0.5)
    assert recorder.labels() == ["stage-change(audio)", "audio-missing(end)"]

    recorder.clear()
    fake_scheduler.advance(2.5)
    assert recorder.labels() == []
    fake_scheduler.advance(0.5)
    assert recorder.labels() == ["stage-change(ramp-down)"]

    recorder.clear()
    fake_scheduler.advance(0.5)
    assert recorder.labels() == [
        "pause-change(True)",
        "terminal(end)",
        "stage-change(terminal)",
    ]

    state = linear_player.get_state()
    assert state.stage is PlayerStage.TERMINAL
    assert state.is_paused is True
    assert state.current_scenelet_id == "end"
    assert fake_scheduler.pending == ()


def test_audio_complete_during_ramp_up_waits_for_hold(
    linear_player: PlayerController, fake_scheduler: FakeScheduler
) -> None:
    recorder = EventRecorder(linear_player)
    linear_player.start()
    recorder.clear()

    linear_player.notify_shot_audio_complete()
    assert recorder.labels() == []
    assert linear_player.get_state().stage is PlayerStage.RAMP_UP

    fake_scheduler.advance(0.5)
    assert recorder.labels() == [
        "stage-change(audio)",
        "audio-start(root)",
        "stage-change(ramp-down)",
    ]

    recorder.clear()
    fake_scheduler.advance(0.5)
    assert recorder.labels()[0] == "scenelet-enter(end)"
    assert len(recorder.of_type("stage-change")) == 1


def test_notifications_outside_audio_stages_are_ignored(
    linear_player: PlayerController, fake_scheduler: FakeScheduler
) -> None:
    recorder = EventRecorder(linear_player)

    linear_player.notify_shot_audio_complete()
    assert recorder.events == []

    linear_player.start()
    fake_scheduler.advance(0.5)
    linear_player.notify_shot_audio_error()
    recorder.clear()
    linear_player.notify_shot_audio_complete()

    assert recorder.events == []
    assert linear_player.get_state().stage is PlayerStage.RAMP_DOWN


def test_pause_then_resume_preserves_event_sequence() -> None:
    def run(with_pauses: bool) -> list[str]:
        scheduler = FakeScheduler()
        controller = create_player_controller(_linear_bundle(), scheduler=scheduler)
        recorder = EventRecorder(controller)
        controller.start()
        if with_pauses:
            controller.pause()
            controller.resume()
        controller.notify_shot_audio_complete()
        if with_pauses:
            controller.pause()
            controller.resume()
        _drive(controller, scheduler)
        return recorder.labels(exclude=("pause-change",))

    assert run(with_pauses=True) == run(with_pauses=False)


def test_pause_cancels_timer_and_resume_runs_pending_action(
    linear_player: PlayerController, fake_scheduler: FakeScheduler
) -> None:
    recorder = EventRecorder(linear_player)
    linear_player.start()
    recorder.clear()

    linear_player.pause()
    assert recorder.labels() == ["pause-change(True)"]
    assert linear_player.get_state().is_paused is True
    assert fake_scheduler.advance(10) == 0

    linear_player.pause()
    assert len(recorder.events) == 1

    recorder.clear()
    linear_player.resume()
    assert recorder.labels() == [
        "pause-change(False)",
        "stage-change(audio)",
        "audio-start(root)",
    ]


def test_audio_complete_while_paused_waits_for_resume(
    linear_player: PlayerController, fake_scheduler: FakeScheduler
) -> None:
    linear_player.start()
    fake_scheduler.advance(0.5)
    linear_player.pause()

    linear_player.notify_shot_audio_complete()
    assert linear_player.get_state().stage is PlayerStage.RAMP_DOWN
    assert fake_scheduler.pending == ()

    recorder = EventRecorder(linear_player)
    linear_player.resume()
    assert recorder.labels()[:2] == ["pause-change(False)", "scenelet-enter(end)"]


def test_first_audio_requires_user_interaction_only_once(
    fake_scheduler: FakeScheduler,
) -> None:
    bundle = _bundle(BundleNode("root", "Only", (_shot(1), _shot(2)), TerminalNext()))
    controller = create_player_controller(bundle, scheduler=fake_scheduler)
    recorder = EventRecorder(controller, ["audio-start", "shot-enter"])

    controller.start()
    _drive(controller, fake_scheduler)

    audio_events = recorder.of_type("audio-start")
    assert [event.requires_user_interaction for event in audio_events] == [True, False]
    assert [event.shot_index for event in recorder.of_type("shot-enter")] == [0, 1]

    recorder.clear()
    controller.restart()
    _drive(controller, fake_scheduler)
    assert recorder.of_type("audio-start")[0].requires_user_interaction is True


class TestBranching:
    def test_branch_pauses_with_choices(self, fake_scheduler: FakeScheduler) -> None:
        controller = create_player_controller(_branch_bundle(), scheduler=fake_scheduler)
        recorder = EventRecorder(controller)

        controller.start()
        _drive(controller, fake_scheduler)

        assert recorder.labels()[-3:] == [
            "pause-change(True)",
            "branch(root)",
            "stage-change(choice)",
        ]
        (branch_event,) = recorder.of_type("branch")
        assert branch_event.prompt == "Which way?"
        state = controller.get_state()
        assert state.stage is PlayerStage.CHOICE
        assert state.is_paused is True
        assert [choice.scenelet_id for choice in state.pending_choices] == ["left", "right"]

    def test_choose_branch_outside_choice_stage_raises(
        self, fake_scheduler: FakeScheduler
    ) -> None:
        controller = create_player_controller(_branch_bundle(), scheduler=fake_scheduler)

        with pytest.raises(PlayerStateError):
            controller.choose_branch("left")

        controller.start()
        with pytest.raises(PlayerStateError):
            controller.choose_branch("left")

    @pytest.mark.parametrize("target", ["ghost", "root", "  "])
    def test_choose_branch_rejects_targets_not_offered(
        self, fake_scheduler: FakeScheduler, target: str
    ) -> None:
        controller = create_player_controller(_branch_bundle(), scheduler=fake_scheduler)
        controller.start()
        _drive(controller, fake_scheduler)

        with pytest.raises(ValueError):
            controller.choose_branch(target)
        assert controller.get_state().stage is PlayerStage.CHOICE

    def test_choose_branch_plays_target(self, fake_scheduler: FakeScheduler) -> None:
        controller = create_player_controller(_branch_bundle(), scheduler=fake_scheduler)
        controller.start()
        _drive(controller, fake_scheduler)
        recorder = EventRecorder(controller)

        controller.choose_branch(" right ")

        assert recorder.labels() == [
            "pause-change(False)",
            "scenelet-enter(right)",
            "stage-change(ramp-up)",
            "shot-enter(right)",
        ]
        state = controller.get_state()
        assert state.pending_choices is None
        assert state.is_paused is False

        _drive(controller, fake_scheduler)
        assert controller.get_state().stage is PlayerStage.INCOMPLETE
        assert recorder.labels()[-2:] == ["incomplete(right)", "stage-change(incomplete)"]

    def test_pause_is_ignored_while_choosing(self, fake_scheduler: FakeScheduler) -> None:
        controller = create_player_controller(_branch_bundle(), scheduler=fake_scheduler)
        controller.start()
        _drive(controller, fake_scheduler)
        recorder = EventRecorder(controller)

        controller.pause()
        controller.resume()

        assert recorder.events == []
        assert controller.get_state().stage is PlayerStage.CHOICE

    def test_branch_preview_audio_starts_and_stops(
        self, fake_scheduler: FakeScheduler
    ) -> None:
        controller = create_player_controller(
            _branch_bundle("assets/shots/root/branch_audio.wav"), scheduler=fake_scheduler
        )
        recorder = EventRecorder(controller, ["branch-audio", "branch-audio-stop", "branch"])
        controller.start()
        _drive(controller, fake_scheduler)

        assert recorder.labels() == ["branch(root)", "branch-audio(root)"]
        assert recorder.of_type("branch-audio")[0].audio_path == (
            "assets/shots/root/branch_audio.wav"
        )

        controller.choose_branch("left")
        assert recorder.labels()[-1] == "branch-audio-stop(root)"

    def test_restart_stops_branch_preview_and_resets(
        self, fake_scheduler: FakeScheduler
    ) -> None:
        controller = create_player_controller(
            _branch_bundle("assets/shots/root/branch_audio.wav"), scheduler=fake_scheduler
        )
        controller.start()
        _drive(controller, fake_scheduler)
        recorder = EventRecorder(controller)

        controller.restart()

        assert recorder.labels() == [
            "branch-audio-stop(root)",
            "stage-change(idle)",
            "pause-change(False)",
            "scenelet-enter(root)",
            "stage-change(ramp-up)",
            "shot-enter(root)",
        ]

    def test_cancelled_preview_timer_firing_late_is_ignored(
        self, fake_scheduler: FakeScheduler
    ) -> None:
        controller = create_player_controller(
            _branch_bundle("assets/shots/root/branch_audio.wav"), scheduler=fake_scheduler
        )
        controller.start()
        fake_scheduler.advance(0.5)
        fake_scheduler.advance(3.0)
        fake_scheduler.advance(0.5)
        (stale_timer,) = fake_scheduler.pending

        controller.restart()
        fake_scheduler.advance(0.5)
        fake_scheduler.advance(3.0)
        fake_scheduler.advance(0.5)
        assert controller.get_state().stage is PlayerStage.CHOICE

        recorder = EventRecorder(controller, ["branch-audio"])
        # Threaded timers can still run after cancel() returns.
        stale_timer.callback()
        assert recorder.events == []

        fake_scheduler.advance(0.5)
        assert recorder.labels() == ["branch-audio(root)"]

    def test_leaving_choice_before_preview_cancels_it(
        self, fake_scheduler: FakeScheduler
    ) -> None:
        controller = create_player_controller(
            _branch_bundle("assets/shots/root/branch_audio.wav"), scheduler=fake_scheduler
        )
        recorder = EventRecorder(controller, ["branch-audio", "branch-audio-stop"])
        controller.start()
        fake_scheduler.advance(0.5)
        fake_scheduler.advance(3.0)
        fake_scheduler.advance(0.5)
        assert controller.get_state().stage is PlayerStage.CHOICE

        controller.choose_branch("left")
        fake_scheduler.advance(0.5)

        assert recorder.events == []


def test_music_changes_only_when_cue_differs(fake_scheduler: FakeScheduler) -> None:
    music = MusicManifest(
        cues=(
            MusicCue("Theme", ("root", "middle"), "assets/music/Theme.m4a"),
        ),
        scenelet_cue_map={"root": "Theme", "middle": "Theme"},
    )
    bundle = _bundle(
        BundleNode("root", "One", (_shot(1),), LinearNext("middle")),
        BundleNode("middle", "Two", (_shot(1),), LinearNext("end")),
        BundleNode("end", "Three", (_shot(1),), TerminalNext()),
        music=music,
    )
    controller = create_player_controller(bundle, scheduler=fake_scheduler)
    recorder = EventRecorder(controller, ["music-change", "scenelet-enter"])

    controller.start()
    _drive(controller, fake_scheduler)

    assert recorder.labels() == [
        "music-change(Theme)",
        "scenelet-enter(root)",
        "scenelet-enter(middle)",
        "music-change",
        "scenelet-enter(end)",
    ]
    first = recorder.of_type("music-change")[0]
    assert first.audio_path == "assets/music/Theme.m4a"
    assert controller.get_state().current_cue is None

    recorder.clear()
    controller.restart()
    assert recorder.labels()[:2] == ["music-change(Theme)", "scenelet-enter(root)"]
    assert controller.get_state().current_cue == "Theme"


def test_subscribe_and_unsubscribe(linear_player: PlayerController) -> None:
    received: list[str] = []
    unsubscribe = linear_player.subscribe(
        "shot-enter", lambda event: received.append(f"first:{event.scenelet_id}")
    )
    linear_player.subscribe(
        "shot-enter", lambda event: received.append(f"second:{event.scenelet_id}")
    )

    linear_player.start()
    unsubscribe()
    unsubscribe()
    linear_player.restart()

    assert received == ["first:root", "second:root", "second:root"]
    with pytest.raises(ValueError):
        linear_player.subscribe("story-ready", received.append)


def test_get_state_returns_a_snapshot(fake_scheduler: FakeScheduler) -> None:
    controller = create_player_controller(_branch_bundle(), scheduler=fake_scheduler)
    assert controller.get_state().stage is PlayerStage.IDLE
    controller.start()
    _drive(controller, fake_scheduler)

    first = controller.get_state()
    controller.choose_branch("left")

    assert first.stage is PlayerStage.CHOICE
    assert len(first.pending_choices) == 2


def test_custom_timing_settings(fake_scheduler: FakeScheduler) -> None:
    controller = create_player_controller(
        _linear_bundle(),
        scheduler=fake_scheduler,
        settings=PlayerSettings(ramp_up_seconds=1.0, ramp_down_seconds=0.25),
    )
    controller.start()

    fake_scheduler.advance(0.5)
    assert controller.get_state().stage is PlayerStage.RAMP_UP
    fake_scheduler.advance(0.5)
    assert controller.get_state().stage is PlayerStage.AUDIO


def test_controller_accepts_camel_case_payload(fake_scheduler: FakeScheduler) -> None:
    payload = {
        "metadata": {"storyId": "story-1", "title": "T", "exportedAt": "2024-05-05T12:30:00Z"},
        "rootSceneletId": "root",
        "scenelets": [
            {
                "id": "root",
                "description": "Only",
                "shots": [{"shotIndex": 1, "imagePath": "a.png", "audioPath": None}],
                "next": {"type": "terminal"},
                "branchAudioPath": None,
            }
        ],
        "music": {"cues": [], "sceneletCueMap": {}},
    }
    controller = create_player_controller(payload, scheduler=fake_scheduler)

    controller.start()
    _drive(controller, fake_scheduler)

    assert controller.get_state().stage is PlayerStage.TERMINAL


class TestValidateBundle:
    def _payload(self) -> dict:
        return _linear_bundle().to_payload()

    def test_round_trips_assembled_payload(self) -> None:
        bundle = validate_bundle(self._payload())

        assert bundle == _linear_bundle()

    def test_missing_root_node(self) -> None:
        payload = self._payload()
        payload["root_scenelet_id"] = "ghost"

        with pytest.raises(InvalidBundleError, match="ghost"):
            PlayerController(payload)

    def test_dangling_linear_reference(self) -> None:
        payload = self._payload()
        payload["scenelets"][0]["next"] = {"type": "linear", "scenelet_id": "ghost"}

        with pytest.raises(InvalidBundleError, match="missing scenelet ghost"):
            validate_bundle(payload)

    def test_branch_without_choices(self) -> None:
        payload = self._payload()
        payload["scenelets"][0]["next"] = {
            "type": "branch",
            "choice_prompt": "Pick",
            "choices": [],
        }

        with pytest.raises(InvalidBundleError, match="without choices"):
            validate_bundle(payload)

    def test_branch_choice_to_missing_node(self) -> None:
        payload = self._payload()
        payload["scenelets"][0]["next"] = {
            "type": "branch",
            "choice_prompt": "Pick",
            "choices": [{"label": "Go", "scenelet_id": "ghost"}],
        }

        with pytest.raises(InvalidBundleError, match="ghost"):
            validate_bundle(payload)

    def test_node_without_shots(self) -> None:
        payload = self._payload()
        payload["scenelets"][1]["shots"] = []

        with pytest.raises(InvalidBundleError, match="missing playable shots"):
            validate_bundle(payload)

    def test_non_integer_shot_index(self) -> None:
        payload = self._payload()
        payload["scenelets"][1]["shots"][0]["shot_index"] = "1"

        with pytest.raises(InvalidBundleError):
            validate_bundle(payload)

    def test_duplicate_ids(self) -> None:
        bundle = _bundle(
            BundleNode("root", "A", (_shot(1),), TerminalNext()),
            BundleNode("root", "B", (_shot(1),), TerminalNext()),
        )

        with pytest.raises(InvalidBundleError, match="Duplicate"):
            validate_bundle(bundle)

    def test_node_without_transition(self) -> None:
        bundle = _bundle(BundleNode("root", "A", (_shot(1),), None))  # type: ignore[arg-type]

        with pytest.raises(InvalidBundleError, match="missing next transition"):
            validate_bundle(bundle)

    def test_unknown_transition_type(self) -> None:
        payload = self._payload()
        payload["scenelets"][1]["next"] = {"type": "teleport"}

        with pytest.raises(InvalidBundleError, match="teleport"):
            validate_bundle(payload)

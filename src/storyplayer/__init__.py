"""Core package for assembling and playing branching audiovisual stories."""

from .records import (
    FileStoryRepository,
    InMemoryStoryRepository,
    SceneletRecord,
    ShotRecord,
    StoryRecord,
    StoryRepository,
    StorySnapshot,
)
from .story_tree import (
    StoryTreeAssemblyError,
    StoryTreeSnapshot,
    assemble_story_tree,
    load_story_tree,
)
from .bundle import (
    BranchNext,
    BundleAssemblyError,
    BundleNode,
    IncompleteNext,
    InvalidBundleError,
    LinearNext,
    MusicManifest,
    StoryBundle,
    TerminalNext,
)
from .bundle_assembler import (
    BundleAssemblyResult,
    assemble_bundle,
    build_bundle,
    determine_next_state,
    load_embedded_story_bundle,
)
from .bundle_export import BundleExportError, PlayerBundleExport, export_player_bundle
from .player import (
    PlayerController,
    PlayerStage,
    PlayerState,
    PlayerStateError,
    create_player_controller,
    validate_bundle,
)
from .scheduling import Scheduler, ThreadingScheduler
from .settings import BundleSettings, PlayerSettings

__all__ = [
    "SceneletRecord",
    "ShotRecord",
    "StoryRecord",
    "StorySnapshot",
    "StoryRepository",
    "InMemoryStoryRepository",
    "FileStoryRepository",
    "StoryTreeAssemblyError",
    "StoryTreeSnapshot",
    "assemble_story_tree",
    "load_story_tree",
    "StoryBundle",
    "BundleNode",
    "LinearNext",
    "BranchNext",
    "TerminalNext",
    "IncompleteNext",
    "MusicManifest",
    "InvalidBundleError",
    "BundleAssemblyError",
    "BundleAssemblyResult",
    "assemble_bundle",
    "build_bundle",
    "determine_next_state",
    "load_embedded_story_bundle",
    "BundleExportError",
    "PlayerBundleExport",
    "export_player_bundle",
    "PlayerController",
    "PlayerStage",
    "PlayerState",
    "PlayerStateError",
    "create_player_controller",
    "validate_bundle",
    "Scheduler",
    "ThreadingScheduler",
    "BundleSettings",
    "PlayerSettings",
]

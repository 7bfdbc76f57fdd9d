"""Assemble flat scenelet records into a validated, canonically ordered story tree."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Iterable, Literal, Mapping, Sequence, Union

from .records import SceneletRecord, StoryRepository

SceneletRole = Literal["root", "branch", "terminal", "linear"]


class StoryTreeAssemblyError(ValueError):
    """Raised when scenelet records do not form a single well-formed tree."""


@dataclass(frozen=True)
class DialogueLine:
    character: str
    line: str


@dataclass(frozen=True)
class SceneletDigest:
    """Normalised view of one scenelet with its tree-assigned identifier."""

    id: str
    parent_id: str | None
    role: SceneletRole
    description: str
    dialogue: tuple[DialogueLine, ...] = ()
    shot_suggestions: tuple[str, ...] = ()
    choice_label: str | None = None


@dataclass(frozen=True)
class BranchingChoice:
    label: str
    leads_to: str


@dataclass(frozen=True)
class BranchingPointDigest:
    """The decision offered by a branch-point scenelet."""

    id: str
    source_scenelet_id: str
    choice_prompt: str
    choices: tuple[BranchingChoice, ...]


StoryTreeEntry = Union[SceneletDigest, BranchingPointDigest]


@dataclass(frozen=True)
class StoryTreeSnapshot:
    """Ordered digest entries plus their rendered text form."""

    entries: tuple[StoryTreeEntry, ...]
    rendered: str
    scenelet_ids: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "entries", tuple(self.entries))
        object.__setattr__(self, "scenelet_ids", MappingProxyType(dict(self.scenelet_ids)))

    @property
    def scenelets(self) -> tuple[SceneletDigest, ...]:
        return tuple(entry for entry in self.entries if isinstance(entry, SceneletDigest))

    @property
    def branching_points(self) -> tuple[BranchingPointDigest, ...]:
        return tuple(
            entry for entry in self.entries if isinstance(entry, BranchingPointDigest)
        )


def assemble_story_tree(records: Sequence[SceneletRecord]) -> StoryTreeSnapshot:
    """Validate ``records`` as a rooted tree and build its digest.

    Children are visited newest first (descending ``created_at``, ties broken by
    ascending id) and receive sequential ``scenelet-N`` identifiers in pre-order.
    Every structural problem raises :class:`StoryTreeAssemblyError`; no partial
    snapshot is ever returned.
    """

    if not records:
        raise StoryTreeAssemblyError("Story tree requires at least one scenelet.")

    node_map: dict[str, SceneletRecord] = {}
    for record in records:
        if not isinstance(record.id, str) or not record.id.strip():
            raise StoryTreeAssemblyError("Scenelet id must be a non-empty string.")
        if record.id in node_map:
            raise StoryTreeAssemblyError(f"Duplicate scenelet id detected: {record.id}.")
        node_map[record.id] = record

    roots: list[SceneletRecord] = []
    children_by_parent: dict[str, list[SceneletRecord]] = {}
    for record in node_map.values():
        if record.parent_id is None:
            roots.append(record)
            continue
        if record.parent_id not in node_map:
            raise StoryTreeAssemblyError(
                f"Scenelet {record.id} references missing parent {record.parent_id}."
            )
        children_by_parent.setdefault(record.parent_id, []).append(record)

    if not roots:
        raise StoryTreeAssemblyError("Story tree is missing a root scenelet.")
    if len(roots) > 1:
        root_ids = ", ".join(root.id for root in roots)
        raise StoryTreeAssemblyError(
            f"Story tree must have exactly one root scenelet. Found: {root_ids}."
        )

    for siblings in children_by_parent.values():
        siblings.sort(key=lambda record: record.id)
        siblings.sort(key=lambda record: _timestamp_sort_key(record.created_at), reverse=True)

    root = roots[0]
    assigned_ids = _assign_scenelet_ids(root, children_by_parent)

    if len(assigned_ids) != len(node_map):
        orphans = ", ".join(
            record_id for record_id in node_map if record_id not in assigned_ids
        )
        raise StoryTreeAssemblyError(f"Story tree contains orphaned scenelets: {orphans}.")

    entries = _emit_entries(root, children_by_parent, assigned_ids)
    return StoryTreeSnapshot(
        entries=tuple(entries),
        rendered=render_story_tree(entries),
        scenelet_ids=assigned_ids,
    )


def load_story_tree(story_id: str, repository: StoryRepository) -> StoryTreeSnapshot:
    """Load a story's scenelets from ``repository`` and assemble the tree."""

    trimmed = story_id.strip() if isinstance(story_id, str) else ""
    if not trimmed:
        raise StoryTreeAssemblyError(
            "Story id must be provided to load the story tree snapshot."
        )
    return assemble_story_tree(list(repository.list_scenelets(trimmed)))


def _assign_scenelet_ids(
    root: SceneletRecord,
    children_by_parent: Mapping[str, Sequence[SceneletRecord]],
) -> dict[str, str]:
    assigned: dict[str, str] = {}
    visiting: set[str] = set()

    # Explicit stack keeps deep chains clear of the recursion limit; the
    # "exit" marker pops a node off the in-progress path.
    stack: list[tuple[SceneletRecord, bool]] = [(root, False)]
    while stack:
        node, exiting = stack.pop()
        if exiting:
            visiting.discard(node.id)
            continue
        if node.id in visiting:
            raise StoryTreeAssemblyError(
                f"Cycle detected in story tree at scenelet {node.id}."
            )

        visiting.add(node.id)
        assigned[node.id] = f"scenelet-{len(assigned) + 1}"
        stack.append((node, True))
        for child in reversed(children_by_parent.get(node.id, ())):
            stack.append((child, False))

    return assigned


def _emit_entries(
    root: SceneletRecord,
    children_by_parent: Mapping[str, Sequence[SceneletRecord]],
    assigned_ids: Mapping[str, str],
) -> list[StoryTreeEntry]:
    entries: list[StoryTreeEntry] = []
    branching_counter = 0

    stack: list[tuple[SceneletRecord, SceneletRecord | None]] = [(root, None)]
    while stack:
        node, parent = stack.pop()
        assigned_id = assigned_ids[node.id]
        children = children_by_parent.get(node.id, ())

        choice_label: str | None = None
        if parent is not None and parent.is_branch_point:
            choice_label = _normalise_label(node.choice_label_from_parent)
            if choice_label is None:
                raise StoryTreeAssemblyError(
                    f"Scenelet {node.id} is missing a choice label from branch parent {parent.id}."
                )

        description, dialogue, suggestions = _normalise_content(node.content)
        entries.append(
            SceneletDigest(
                id=assigned_id,
                parent_id=assigned_ids[parent.id] if parent is not None else None,
                role=_determine_role(node, parent),
                description=description,
                dialogue=dialogue,
                shot_suggestions=suggestions,
                choice_label=choice_label,
            )
        )

        if node.is_branch_point:
            choice_prompt = _normalise_label(node.choice_prompt)
            if choice_prompt is None:
                raise StoryTreeAssemblyError(
                    f"Branch point scenelet {node.id} is missing a choice prompt."
                )
            if not children:
                raise StoryTreeAssemblyError(
                    f"Branch point scenelet {node.id} must include at least one child scenelet."
                )

            choices: list[BranchingChoice] = []
            for child in children:
                label = _normalise_label(child.choice_label_from_parent)
                if label is None:
                    raise StoryTreeAssemblyError(
                        f"Branch point {node.id} has a child without a choice label: {child.id}."
                    )
                choices.append(BranchingChoice(label=label, leads_to=assigned_ids[child.id]))

            branching_counter += 1
            entries.append(
                BranchingPointDigest(
                    id=f"branching-point-{branching_counter}",
                    source_scenelet_id=assigned_id,
                    choice_prompt=choice_prompt,
                    choices=tuple(choices),
                )
            )

        for child in reversed(children):
            stack.append((child, node))

    return entries


def _determine_role(node: SceneletRecord, parent: SceneletRecord | None) -> SceneletRole:
    if parent is None:
        return "root"
    if node.is_terminal_node:
        return "terminal"
    if parent.is_branch_point:
        return "branch"
    return "linear"


def _normalise_label(value: str | None) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _basic_string(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip()
    return None


def _normalise_content(
    content: Mapping[str, Any] | None,
) -> tuple[str, tuple[DialogueLine, ...], tuple[str, ...]]:
    if not isinstance(content, Mapping):
        return "", (), ()

    description = _basic_string(content.get("description")) or ""

    dialogue: list[DialogueLine] = []
    raw_dialogue = content.get("dialogue")
    if isinstance(raw_dialogue, list):
        for entry in raw_dialogue:
            if not isinstance(entry, Mapping):
                continue
            character = _basic_string(entry.get("character"))
            line = _basic_string(entry.get("line"))
            if character is not None and line is not None:
                dialogue.append(DialogueLine(character=character, line=line))

    raw_suggestions = content.get("shot_suggestions", content.get("shotSuggestions"))
    suggestions: list[str] = []
    if isinstance(raw_suggestions, list):
        for entry in raw_suggestions:
            text = _basic_string(entry)
            if text is not None:
                suggestions.append(text)

    return description, tuple(dialogue), tuple(suggestions)


def _timestamp_sort_key(value: str | datetime | None) -> float:
    """Return a sortable epoch value; unparseable timestamps sort last."""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return float("-inf")
    else:
        return float("-inf")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def render_story_tree(entries: Iterable[StoryTreeEntry]) -> str:
    """Serialise digest entries into the indentation-based transcript form."""

    lines: list[str] = []
    for entry in entries:
        if isinstance(entry, SceneletDigest):
            lines.extend(_render_scenelet(entry))
        elif isinstance(entry, BranchingPointDigest):
            lines.extend(_render_branching_point(entry))
        else:
            raise TypeError(f"Unsupported story tree entry: {type(entry)!r}")
    return "\n".join(lines)


def _render_scenelet(scenelet: SceneletDigest) -> list[str]:
    indent = "  "
    lines = [f"- {scenelet.id}:"]
    if scenelet.role != "linear":
        lines.append(f"{indent}role: {scenelet.role}")
    if scenelet.choice_label:
        lines.append(f"{indent}choice_label: {_format_string(scenelet.choice_label)}")
    lines.append(f"{indent}description: {_format_string(scenelet.description)}")

    if scenelet.dialogue:
        lines.append(f"{indent}dialogue:")
        for line in scenelet.dialogue:
            lines.append(f"{indent}  - character: {_format_string(line.character)}")
            lines.append(f"{indent}    line: {_format_string(line.line)}")
    else:
        lines.append(f"{indent}dialogue: []")

    if scenelet.shot_suggestions:
        lines.append(f"{indent}shot_suggestions:")
        for suggestion in scenelet.shot_suggestions:
            lines.append(f"{indent}  - {_format_string(suggestion)}")
    else:
        lines.append(f"{indent}shot_suggestions: []")

    return lines


def _render_branching_point(branch: BranchingPointDigest) -> list[str]:
    indent = "  "
    lines = [
        f"- {branch.id}:",
        f"{indent}choice_prompt: {_format_string(branch.choice_prompt)}",
    ]
    if not branch.choices:
        lines.append(f"{indent}choices: []")
        return lines

    lines.append(f"{indent}choices:")
    for choice in branch.choices:
        lines.append(f"{indent}  - label: {_format_string(choice.label)}")
        lines.append(f"{indent}    leads_to: {choice.leads_to}")
    return lines


def _format_string(value: str) -> str:
    if not value:
        return '""'
    if "\n" not in value:
        return json.dumps(value, ensure_ascii=False)
    block = "\n".join(f"      {segment}" for segment in value.split("\n"))
    return f"|\n{block}"


__all__ = [
    "BranchingChoice",
    "BranchingPointDigest",
    "DialogueLine",
    "SceneletDigest",
    "SceneletRole",
    "StoryTreeAssemblyError",
    "StoryTreeEntry",
    "StoryTreeSnapshot",
    "assemble_story_tree",
    "load_story_tree",
    "render_story_tree",
]

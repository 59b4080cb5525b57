"""Goal files: markdown with optional YAML frontmatter."""

from dataclasses import dataclass, field
from pathlib import Path

import frontmatter


@dataclass
class GoalFile:
    goal: str
    source: str
    models: list[str] = field(default_factory=list)
    max_rounds: int | None = None
    threshold: float | None = None


def _split_models(value: object) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [m.strip() for m in str(value).split(",") if m.strip()]


def parse_goal_file(file_path: Path) -> GoalFile:
    """Parse a goal file.

    Recognised frontmatter keys: ``models`` (list or comma-separated
    string), ``max_rounds`` (int) and ``threshold`` (float). Anything else is
    ignored. Without frontmatter only the body is used.

    Raises:
        ValueError: the body is empty.
    """
    post = frontmatter.load(str(file_path))
    goal = post.content.strip()
    if not goal:
        raise ValueError(f"Goal file is empty: {file_path}")
    meta = dict(post.metadata)
    return GoalFile(
        goal=goal,
        source=str(file_path),
        models=_split_models(meta["models"]) if "models" in meta else [],
        max_rounds=int(meta["max_rounds"]) if "max_rounds" in meta else None,
        threshold=float(meta["threshold"]) if "threshold" in meta else None,
    )

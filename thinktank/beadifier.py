"""Beadifier: turn a consensus decision into atomic, actionable tasks.

Tasks are extracted one at a time by prompting a model until it answers
DONE, then rendered as ``bd create`` commands or markdown spec files.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from thinktank.providers.base import AIProvider, LLMMessage, LLMRequest, MessageRole

logger = logging.getLogger(__name__)

MAX_TITLE_CHARS = 80
MAX_DESCRIPTION_CHARS = 200
COMPOUND_MARKERS = (" and ", " then ", " also ", " plus ")
DONE = "DONE"

BEADIFIER_SYSTEM_PROMPT = """\
You are a task decomposer. Your job is to extract ATOMIC tasks from decisions.

Rules:
1. Each task must be ONE action (no "and", "then", "also")
2. Title: max 80 characters, starts with a verb
3. Description: max 200 characters
4. If no more tasks remain, respond with {"title": "DONE"}

Respond ONLY with JSON:
{"title": "...", "description": "...", "priority": "P1", "type": "task", "dependencies": []}
"""

EXTRACT_TASK_PROMPT = """\
Decision to implement:
{decision}

Tasks already extracted:
{extracted}

Extract task #{task_num}. What is ONE atomic action needed that is not listed above?
If all tasks have been extracted, respond with {{"title": "DONE"}}.
"""


class Priority(str, Enum):
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"
    P4 = "P4"

    @property
    def level(self) -> int:
        return int(self.value[1])


class TaskType(str, Enum):
    TASK = "task"
    BUG = "bug"
    FEATURE = "feature"
    DOCS = "docs"


class BeadifyTarget(str, Enum):
    BEADS = "beads"
    SPEC_FILES = "spec_files"


@dataclass
class BeadTask:
    title: str
    description: str
    priority: Priority = Priority.P2
    task_type: TaskType = TaskType.TASK
    dependencies: list[str] = field(default_factory=list)  # titles this task blocks on


@dataclass
class BeadifyConfig:
    max_tasks: int = 20
    target: BeadifyTarget = BeadifyTarget.BEADS
    epic_id: str | None = None  # e.g. "bd-a3f8"
    temperature: float = 0.3
    max_tokens: int = 300


def extract_json(text: str) -> dict | str | None:
    """Pull a JSON object out of a model reply.

    Handles plain JSON, markdown code fences and JSON embedded in prose.
    Returns the bare string ``"DONE"`` for a plain DONE reply, or None when
    nothing parseable is found.
    """
    text = text.strip()
    if not text:
        return None
    if text.strip("`\"'. ").upper() == DONE:
        return DONE

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    if "```" in text:
        for part in text.split("```")[1::2]:
            candidate = part.strip()
            if candidate.split("\n", 1)[0].strip().lower() in ("json", ""):
                candidate = candidate.split("\n", 1)[-1].strip() if "\n" in candidate else ""
            if not candidate:
                continue
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                continue

    first_brace = text.find("{")
    last_brace = text.rfind("}")
    if first_brace != -1 and last_brace > first_brace:
        try:
            return json.loads(text[first_brace:last_brace + 1])
        except json.JSONDecodeError:
            pass
    return None


def _parse_priority(value: object) -> Priority:
    if isinstance(value, int) and not isinstance(value, bool):
        value = f"P{value}"
    return Priority(str(value).strip().upper())


def task_from_dict(data: dict) -> BeadTask | None:
    """Build a BeadTask from parsed JSON, or None for unknown priority/type or missing title."""
    title = str(data.get("title", "")).strip()
    if not title:
        return None
    try:
        priority = _parse_priority(data.get("priority", "P2"))
        task_type = TaskType(str(data.get("type", "task")).strip().lower())
    except ValueError:
        return None
    dependencies = data.get("dependencies") or []
    if isinstance(dependencies, str):
        dependencies = [dependencies]
    return BeadTask(
        title=title,
        description=str(data.get("description", "")).strip(),
        priority=priority,
        task_type=task_type,
        dependencies=[str(d) for d in dependencies],
    )


def is_atomic(task: BeadTask) -> bool:
    """Single-action check: length limits and no compound markers in the title."""
    if len(task.title) > MAX_TITLE_CHARS or len(task.description) > MAX_DESCRIPTION_CHARS:
        return False
    title = task.title.lower()
    return not any(marker in title for marker in COMPOUND_MARKERS)


def slugify(text: str) -> str:
    """Lower-case; runs of anything but Unicode letters and digits become one dash."""
    return re.sub(r"[\W_]+", "-", text.lower()).strip("-")


class Beadifier:
    def __init__(self, config: BeadifyConfig | None = None) -> None:
        self.config = config or BeadifyConfig()

    async def extract_tasks(self, decision: str, provider: AIProvider) -> list[BeadTask]:
        """Ask ``provider`` for one task at a time until it replies DONE.

        Stops early on a DONE sentinel or an unparseable reply. Candidates
        that fail validation are dropped and do not end the loop.

        Raises:
            ProviderError: the provider call failed.
        """
        tasks: list[BeadTask] = []
        for task_num in range(1, self.config.max_tasks + 1):
            extracted = "\n".join(f"- {t.title}" for t in tasks) or "- none yet"
            request = LLMRequest(
                model=provider.model_string(),
                messages=[
                    LLMMessage(role=MessageRole.SYSTEM, content=BEADIFIER_SYSTEM_PROMPT),
                    LLMMessage(
                        role=MessageRole.USER,
                        content=EXTRACT_TASK_PROMPT.format(
                            decision=decision,
                            extracted=extracted,
                            task_num=task_num,
                        ),
                    ),
                ],
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )
            response = await provider.complete(request)

            parsed = extract_json(response.content)
            if parsed == DONE or (isinstance(parsed, dict) and str(parsed.get("title", "")).strip() == DONE):
                logger.info("Beadifier finished after %d tasks", len(tasks))
                break
            if not isinstance(parsed, dict):
                logger.warning("Beadifier could not parse reply for task #%d, stopping", task_num)
                break

            task = task_from_dict(parsed)
            if task is None or not is_atomic(task):
                logger.debug("Rejected task candidate #%d: %s", task_num, parsed)
                continue
            tasks.append(task)
        return tasks

    def to_beads(self, tasks: list[BeadTask]) -> list[str]:
        """Render one ``bd create`` command per task."""
        commands: list[str] = []
        for task in tasks:
            title = task.title.replace('"', '\\"')
            cmd = f'bd create "{title}" -p {task.priority.level} --type {task.task_type.value}'
            if self.config.epic_id:
                cmd += f" --parent {self.config.epic_id}"
            if task.dependencies:
                cmd += f" # deps: {', '.join(task.dependencies)}"
            commands.append(cmd)
        return commands

    def write_spec_files(self, tasks: list[BeadTask], directory: Path, start_id: int = 1) -> list[Path]:
        """Write one markdown spec per task as ``NNN-slug.md``. Returns the paths written."""
        directory.mkdir(parents=True, exist_ok=True)
        paths: list[Path] = []
        for offset, task in enumerate(tasks):
            spec_id = start_id + offset
            path = directory / f"{spec_id:03d}-{slugify(task.title)}.md"
            lines = [
                f"# Spec {spec_id}: {task.title}",
                "",
                f"**Priority:** {task.priority.value}",
                "**Status:** planned",
                f"**Type:** {task.task_type.value}",
            ]
            if task.dependencies:
                lines.append(f"**Depends on:** {', '.join(task.dependencies)}")
            lines += [
                "",
                "---",
                "",
                "## Overview",
                "",
                task.description,
                "",
                "---",
                "",
                "## Acceptance Criteria",
                "",
                f"- [ ] {task.title}",
                "- [ ] Verify implementation works",
                "",
            ]
            path.write_text("\n".join(lines), encoding="utf-8")
            paths.append(path)
        logger.info("Wrote %d spec files to %s", len(paths), directory)
        return paths

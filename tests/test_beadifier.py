"""Tests for thinktank/beadifier.py."""

import json

import pytest

from thinktank.beadifier import (
    Beadifier,
    BeadifyConfig,
    BeadTask,
    Priority,
    TaskType,
    extract_json,
    is_atomic,
    slugify,
    task_from_dict,
)
from thinktank.providers.base import NetworkError
from tests.conftest import MockProvider

DECISION = "1. Create the tasks table\n2. Add a POST /tasks endpoint\n3. Document the API"


def _task_json(title: str, priority="P1", task_type="task", **extra) -> str:
    return json.dumps({"title": title, "description": f"{title} for the TODO API", "priority": priority,
                       "type": task_type, **extra})


async def test_three_step_synthesis_yields_three_tasks():
    provider = MockProvider("claude", [
        _task_json("Create tasks table"),
        _task_json("Add POST /tasks endpoint", priority="P2", task_type="feature"),
        _task_json("Document the API", priority="P3", task_type="docs"),
        '{"title": "DONE"}',
    ])
    tasks = await Beadifier().extract_tasks(DECISION, provider)

    assert [t.title for t in tasks] == ["Create tasks table", "Add POST /tasks endpoint", "Document the API"]
    assert provider.calls == 4
    assert tasks[1].task_type is TaskType.FEATURE
    assert tasks[2].priority is Priority.P3
    first = provider.requests[0]
    assert first.temperature == 0.3
    assert first.max_tokens == 300
    assert "Extract task #1" in first.messages[1].content
    assert "- Create tasks table" in provider.requests[1].messages[1].content


async def test_bare_done_and_fenced_json():
    provider = MockProvider("claude", [
        "Here you go:\n```json\n" + _task_json("Create tasks table") + "\n```",
        "DONE",
    ])
    tasks = await Beadifier().extract_tasks(DECISION, provider)
    assert [t.title for t in tasks] == ["Create tasks table"]
    assert provider.calls == 2


async def test_invalid_candidates_dropped_without_stopping():
    provider = MockProvider("claude", [
        _task_json("Create table and add index"),
        _task_json("X" * 81),
        _task_json("Create tasks table", priority="P9"),
        _task_json("Create tasks table", task_type="epic"),
        _task_json("Create tasks table"),
        '{"title": "DONE"}',
    ])
    tasks = await Beadifier().extract_tasks(DECISION, provider)
    assert [t.title for t in tasks] == ["Create tasks table"]
    assert provider.calls == 6


async def test_unparseable_reply_stops():
    provider = MockProvider("claude", ["I am not sure what you mean.", _task_json("Never reached")])
    assert await Beadifier().extract_tasks(DECISION, provider) == []
    assert provider.calls == 1


async def test_max_tasks_caps_calls():
    provider = MockProvider("claude", [_task_json("Create tasks table")])
    tasks = await Beadifier(BeadifyConfig(max_tasks=2)).extract_tasks(DECISION, provider)
    assert len(tasks) == 2
    assert provider.calls == 2


async def test_provider_errors_propagate():
    provider = MockProvider("claude", fail_with=NetworkError("claude", "down"))
    with pytest.raises(NetworkError):
        await Beadifier().extract_tasks(DECISION, provider)


def test_is_atomic_rules():
    assert is_atomic(BeadTask(title="Create module", description="Create a new module"))
    assert not is_atomic(BeadTask(title="Create module then test", description="x"))
    assert not is_atomic(BeadTask(title="Write docs also tests", description="x"))
    assert not is_atomic(BeadTask(title="Create module", description="d" * 201))
    assert is_atomic(BeadTask(title="A" * 80, description="d" * 200))
    # Markers only count as whole words.
    assert is_atomic(BeadTask(title="Handle expand button", description="x"))


def test_extract_json_variants():
    assert extract_json('{"title": "A"}') == {"title": "A"}
    assert extract_json('Sure! {"title": "A"} hope that helps') == {"title": "A"}
    assert extract_json("```\n{\"title\": \"A\"}\n```") == {"title": "A"}
    assert extract_json("done.") == "DONE"
    assert extract_json("") is None
    assert extract_json("no json here") is None


def test_task_from_dict_accepts_integer_priority():
    task = task_from_dict({"title": "Fix crash", "priority": 0, "type": "BUG", "dependencies": "Create module"})
    assert task.priority is Priority.P0
    assert task.task_type is TaskType.BUG
    assert task.dependencies == ["Create module"]


def test_to_beads():
    tasks = [
        BeadTask(title='Add "done" flag', description="d", priority=Priority.P1),
        BeadTask(title="Document API", description="d", priority=Priority.P3, task_type=TaskType.DOCS,
                 dependencies=["Add done flag", "Create table"]),
    ]
    commands = Beadifier(BeadifyConfig(epic_id="bd-a3f8")).to_beads(tasks)
    assert commands[0] == 'bd create "Add \\"done\\" flag" -p 1 --type task --parent bd-a3f8'
    assert commands[1] == (
        'bd create "Document API" -p 3 --type docs --parent bd-a3f8 # deps: Add done flag, Create table'
    )


def test_to_beads_without_epic():
    commands = Beadifier().to_beads([BeadTask(title="Create module", description="d")])
    assert commands == ['bd create "Create module" -p 2 --type task']


def test_write_spec_files(tmp_path):
    tasks = [
        BeadTask(title="Create test module", description="Create a test module for verification",
                 priority=Priority.P0, task_type=TaskType.FEATURE),
        BeadTask(title="Fix Bug #123", description="Fix it", dependencies=["Create test module"]),
    ]
    spec_dir = tmp_path / "specs" / "nested"
    paths = Beadifier().write_spec_files(tasks, spec_dir, start_id=900)

    assert [p.name for p in paths] == ["900-create-test-module.md", "901-fix-bug-123.md"]
    content = paths[0].read_text(encoding="utf-8")
    assert "# Spec 900: Create test module" in content
    assert "**Priority:** P0" in content
    assert "**Type:** feature" in content
    assert "Create a test module for verification" in content
    assert "**Depends on:** Create test module" in paths[1].read_text(encoding="utf-8")


@pytest.mark.parametrize(
    "text, slug",
    [
        ("Create Module", "create-module"),
        ("Fix Bug #123", "fix-bug-123"),
        ("Add_tests-for-API", "add-tests-for-api"),
        ("  --Trim me--  ", "trim-me"),
        ("Créer l'API", "créer-l-api"),
    ],
)
def test_slugify(text, slug):
    assert slugify(text) == slug

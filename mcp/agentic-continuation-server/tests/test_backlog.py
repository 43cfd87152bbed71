"""
Tests for backlog.py - goal loop backlog and progress log.

Run with: pytest tests/test_backlog.py -v
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from agentic_continuation.backlog import (
    add_story,
    append_progress_entry,
    create_backlog_from_task,
    format_backlog_status,
    get_backlog_status,
    get_incomplete_stories,
    get_next_story,
    get_progress_summary,
    initialize_progress,
    mark_story_complete,
    read_backlog,
    read_progress,
    write_backlog,
)


@pytest.fixture
def backlog_dir(project_dir):
    write_backlog(project_dir, create_backlog_from_task("Add login page", "webapp"))
    return project_dir


class TestBacklog:
    def test_created_from_task(self):
        backlog = create_backlog_from_task("Add login page\nwith OAuth")
        story = backlog["user_stories"][0]
        assert story["id"] == "US-001"
        assert story["title"] == "Add login page"
        assert story["passes"] is False

    def test_read_missing(self, project_dir):
        assert read_backlog(project_dir) is None

    def test_round_trip(self, backlog_dir):
        backlog = read_backlog(backlog_dir)
        assert backlog["project"] == "webapp"
        assert len(backlog["user_stories"]) == 1

    def test_add_story_and_priority_order(self, backlog_dir):
        assert add_story(backlog_dir, {"id": "US-000", "title": "Urgent", "priority": 0}) is True
        backlog = read_backlog(backlog_dir)
        assert [s["id"] for s in get_incomplete_stories(backlog)] == ["US-000", "US-001"]
        assert get_next_story(backlog)["id"] == "US-000"

    def test_add_duplicate_rejected(self, backlog_dir):
        assert add_story(backlog_dir, {"id": "US-001", "title": "dup"}) is False

    def test_mark_complete(self, backlog_dir):
        assert mark_story_complete(backlog_dir, "US-001", "done in 2 iterations") is True
        backlog = read_backlog(backlog_dir)
        assert get_next_story(backlog) is None
        assert backlog["user_stories"][0]["notes"] == "done in 2 iterations"

    def test_mark_unknown(self, backlog_dir):
        assert mark_story_complete(backlog_dir, "US-404") is False

    def test_status(self, backlog_dir):
        add_story(backlog_dir, {"id": "US-002", "title": "Logout"})
        mark_story_complete(backlog_dir, "US-001")
        status = get_backlog_status(read_backlog(backlog_dir))
        assert status == {"total": 2, "completed": 1, "remaining": 1, "percent_complete": 50}

    def test_format_status(self, backlog_dir):
        text = format_backlog_status(read_backlog(backlog_dir))
        assert "0/1 stories" in text
        assert "Next: [US-001]" in text


class TestProgressLog:
    def test_missing(self, project_dir):
        assert read_progress(project_dir) is None
        assert get_progress_summary(project_dir) == ""

    def test_entries_appended(self, project_dir):
        initialize_progress(project_dir, "Add login page")
        append_progress_entry(project_dir, 1, "Scaffolded form", story_id="US-001", files_changed=["login.py"])
        content = read_progress(project_dir)
        assert "Task: Add login page" in content
        assert "## Iteration 1" in content
        assert "Story: US-001" in content
        assert "Files: login.py" in content

    def test_summary_keeps_last_n(self, project_dir):
        initialize_progress(project_dir, "t")
        for i in range(1, 6):
            append_progress_entry(project_dir, i, f"step {i}")
        summary = get_progress_summary(project_dir, last_n=2)
        assert "step 4" in summary
        assert "step 5" in summary
        assert "step 3" not in summary

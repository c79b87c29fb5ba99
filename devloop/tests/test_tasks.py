"""Tests for the ledger-backed task source."""

from pathlib import Path

import pytest

from devloop.models import Task
from devloop.state import StateLedger
from devloop.tasks import LedgerTaskSource


def make_source(tmp_path: Path, tasks: list[Task], max_retries: int = 3) -> LedgerTaskSource:
    ledger = StateLedger(tmp_path)
    ledger.save_tasks(tasks)
    return LedgerTaskSource(ledger, max_retries=max_retries)


class TestFetchNextPending:
    """Tests for fetch_next_pending()."""

    @pytest.mark.asyncio
    async def test_returns_none_when_nothing_pending(self, tmp_path: Path):
        """Done and blocked tasks are never returned."""
        source = make_source(
            tmp_path,
            [
                Task(id="1", title="A", description="a", status="done"),
                Task(id="2", title="B", description="b", status="blocked"),
            ],
        )

        assert await source.fetch_next_pending() is None

    @pytest.mark.asyncio
    async def test_priority_then_file_order(self, tmp_path: Path):
        """Higher priority wins; equal priorities keep file order."""
        source = make_source(
            tmp_path,
            [
                Task(id="1", title="A", description="a", priority="low"),
                Task(id="2", title="B", description="b"),
                Task(id="3", title="C", description="c", priority="high"),
                Task(id="4", title="D", description="d", priority="high"),
            ],
        )

        task = await source.fetch_next_pending()

        assert task.id == "3"


class TestStatusAndCounts:
    """Tests for set_status() and counts()."""

    @pytest.mark.asyncio
    async def test_set_status_persists(self, tmp_path: Path):
        """Status changes are written to the ledger."""
        source = make_source(tmp_path, [Task(id="1", title="A", description="a")])

        await source.set_status("1", "in-progress")

        assert source.ledger.get_task("1").status == "in-progress"

    @pytest.mark.asyncio
    async def test_set_status_unknown_task_is_ignored(self, tmp_path: Path):
        """An unknown id does not raise."""
        source = make_source(tmp_path, [])

        await source.set_status("9", "done")

    @pytest.mark.asyncio
    async def test_counts(self, tmp_path: Path):
        """counts() returns (total, done)."""
        source = make_source(
            tmp_path,
            [
                Task(id="1", title="A", description="a", status="done"),
                Task(id="2", title="B", description="b"),
            ],
        )

        assert await source.counts() == (2, 1)


class TestAddTask:
    """Tests for add_task()."""

    @pytest.mark.asyncio
    async def test_ids_increment(self, tmp_path: Path):
        """New tasks get the next numeric id."""
        source = make_source(tmp_path, [Task(id="4", title="A", description="a")])

        task = await source.add_task("Parser", "Write the parser", priority="high")

        assert task.id == "5"
        assert task.status == "pending"
        assert source.ledger.get_task("5").priority == "high"

    @pytest.mark.asyncio
    async def test_first_task_id(self, tmp_path: Path):
        """The first task is number 1."""
        source = make_source(tmp_path, [])

        task = await source.add_task("Parser", "Write it", task_type="analysis")

        assert task.id == "1"
        assert task.task_type == "analysis"


class TestCreateFixTask:
    """Tests for create_fix_task()."""

    @pytest.mark.asyncio
    async def test_fix_task_created(self, tmp_path: Path):
        """A fix task is queued with high priority and a description."""
        source = make_source(tmp_path, [Task(id="1", title="Parser", description="Write it")])

        fix = await source.create_fix_task("1", "AssertionError in test_parse", "1 failed")

        assert fix.id == "1-fix-1"
        assert fix.title == "Fix: Parser (attempt 1)"
        assert fix.priority == "high"
        assert fix.parent_id == "1"
        assert "Attempt 1/3" in fix.description
        assert "AssertionError in test_parse" in fix.description
        assert "1 failed" in fix.description
        assert source.ledger.get_task("1").retry_count == 1

    @pytest.mark.asyncio
    async def test_fix_task_runs_before_parent(self, tmp_path: Path):
        """The high-priority fix task is fetched before its parent."""
        source = make_source(tmp_path, [Task(id="1", title="Parser", description="Write it")])

        await source.create_fix_task("1", "failed", "output")

        assert (await source.fetch_next_pending()).id == "1-fix-1"

    @pytest.mark.asyncio
    async def test_exceeding_max_retries_blocks(self, tmp_path: Path):
        """Past max_retries the parent is blocked and no fix is created."""
        source = make_source(
            tmp_path, [Task(id="1", title="Parser", description="Write it")], max_retries=1
        )

        first = await source.create_fix_task("1", "failed", "output")
        second = await source.create_fix_task("1", "failed again", "output")

        assert first is not None
        assert second is None
        assert source.ledger.get_task("1").status == "blocked"
        assert [t.id for t in source.ledger.get_tasks()] == ["1", "1-fix-1"]

    @pytest.mark.asyncio
    async def test_unknown_task(self, tmp_path: Path):
        """An unknown parent yields None."""
        source = make_source(tmp_path, [])

        assert await source.create_fix_task("9", "failed", "output") is None

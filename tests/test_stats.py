"""Tests for the per-iteration tracker and failure context."""

import json

from ralphie.models import Commit, IterationPhase, IterationResult, ResultSummary, Stats, Thought, ToolComplete, ToolStart
from ralphie.stats import IterationTracker, build_failure_context, write_stats


def start(tool_id, name, **inp):
    return ToolStart(tool_id, name, inp)


def done(tool_id, name, output="", is_error=False, duration=0.5):
    return ToolComplete(tool_id, name, output, is_error, duration)


def test_categories_counted_on_start():
    t = IterationTracker()
    for i, name in enumerate(["Read", "Grep", "Edit", "Bash", "TodoWrite"]):
        t.apply(start(str(i), name))
    assert t.stats == Stats(tools_started=5, reads=2, writes=1, commands=1, meta_ops=1)


def test_completed_and_errored_are_exclusive():
    t = IterationTracker()
    t.apply(start("a", "Bash", command="ls"))
    t.apply(start("b", "Bash", command="false"))
    t.apply(done("a", "Bash"))
    t.apply(done("b", "Bash", is_error=True))
    assert t.stats.tools_completed == 1
    assert t.stats.tools_errored == 1
    assert t.stats.tools_completed + t.stats.tools_errored <= t.stats.tools_started


def test_orphaned_completion_not_counted():
    t = IterationTracker()
    t.apply(ToolComplete("ghost", "?", "", False, None, orphaned=True))
    assert t.stats == Stats()
    assert len(t.orphaned) == 1
    assert t.activity_log[-1].render() == "✓ ? ghost (orphaned)"


def test_duplicate_completion_counted_once():
    t = IterationTracker()
    t.apply(start("a", "Read", file_path="x.py"))
    t.apply(done("a", "Read"))
    t.apply(done("a", "Read"))
    assert t.stats.tools_completed == 1
    assert len(t.orphaned) == 1


def test_activity_log_is_bounded():
    t = IterationTracker(max_log=3)
    for i in range(10):
        t.apply(Thought(f"thought {i}"))
    assert len(t.activity_log) == 3
    assert t.activity_log[0].text == "thought 7"
    assert t.task_text == "thought 0"


def test_activity_follows_open_tools():
    t = IterationTracker()
    t.start()
    assert t.activity == "thinking"
    t.apply(start("a", "Read", file_path="x.py"))
    assert t.activity == "reading"
    t.apply(start("b", "Bash", command="pytest"))
    assert t.activity == "running"
    t.apply(done("b", "Bash"))
    assert t.activity == "reading"


def test_coalesced_summary():
    t = IterationTracker()
    assert t.coalesced_summary() == "Waiting..."
    t.start()
    assert t.coalesced_summary() == "Thinking..."
    t.apply(start("a", "Read", file_path="/x/a.py"))
    t.apply(start("b", "Read", file_path="/x/b.py"))
    t.apply(start("c", "Bash", command="pytest -q"))
    assert t.coalesced_summary() == "Reading a.py, b.py • Running pytest"
    t.finish()
    assert t.phase == IterationPhase.DONE
    assert t.coalesced_summary() == "Done (0 tools)"


def test_commits_and_result_recorded():
    t = IterationTracker()
    t.apply(Commit("abc1234", "feat: x"))
    t.apply(ResultSummary(is_error=False, text="done"))
    assert t.last_commit == Commit("abc1234", "feat: x")
    assert t.result.text == "done"


def test_failure_context_prefers_errored_tool():
    t = IterationTracker()
    t.apply(Thought("Running the tests"))
    t.apply(start("a", "Bash", command="npm test"))
    t.apply(done("a", "Bash", output="x" * 1000, is_error=True))
    t.apply(start("b", "Read", file_path="a.py"))
    t.apply(done("b", "Read", output="contents"))

    ctx = build_failure_context(t)
    assert ctx.last_tool_name == "Bash"
    assert ctx.last_tool_input == "command: npm test"
    assert len(ctx.last_tool_output) == 500
    assert len(ctx.recent_activity) == 5
    assert ctx.recent_activity[0].startswith("✓ Read a.py")
    assert ctx.recent_activity[-1] == "💭 Running the tests"


def test_failure_context_falls_back_to_open_tool():
    t = IterationTracker()
    t.apply(start("a", "Bash", command="sleep 100"))
    ctx = build_failure_context(t)
    assert ctx.last_tool_name == "Bash"
    assert ctx.last_tool_output is None
    assert ctx.recent_activity == ("▶ $ sleep 100",)


def test_failure_context_empty_tracker():
    ctx = build_failure_context(IterationTracker())
    assert ctx.last_tool_name is None
    assert ctx.recent_activity == ()


def test_stats_add():
    total = Stats(tools_started=2, reads=1) + Stats(tools_started=1, commands=1)
    assert total == Stats(tools_started=3, reads=1, commands=1)
    assert total.to_dict()["toolsStarted"] == 3


def test_write_stats(tmp_path):
    results = [
        IterationResult(iteration=1, duration=2.0, cost_usd=0.5, stats=Stats(tools_started=2)),
        IterationResult(iteration=2, duration=3.0, stats=Stats(tools_started=1)),
    ]
    write_stats(tmp_path / "out", "2026-01-01 10:00:00", {"budget": 4}, results, "complete")
    data = json.loads((tmp_path / "out" / "stats.json").read_text())
    assert data["outcome"] == "complete"
    assert data["totals"]["iterations"] == 2
    assert data["totals"]["cost_usd"] == 0.5
    assert data["totals"]["stats"]["toolsStarted"] == 3
    assert data["iterations"][1]["status"] == "ok"

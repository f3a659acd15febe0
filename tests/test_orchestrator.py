"""End-to-end tests of the run loop with fake assistants."""

import asyncio
import json
import os
import shutil
import signal
import subprocess

import pytest

from conftest import CRASHER, IDLER, SLEEPER, WORKER, RecordingSink
from ralphie.config import RunConfig
from ralphie.errors import RunInterrupted, SpecAmbiguous
from ralphie.harness import CommandHarness
from ralphie.models import ExitCode, RunState
from ralphie.orchestrator import Orchestrator
from ralphie.spec import ACTIVE_SPECS_DIR, read_snapshot


def orchestrator(project, harness, sink=None, **kwargs):
    kwargs.setdefault("iterations", 5)
    kwargs.setdefault("idle_timeout", 10.0)
    config = RunConfig(cwd=project, **kwargs)
    return Orchestrator(config, sink or RecordingSink(), harness)


@pytest.mark.asyncio
async def test_completes_spec_in_budgeted_iterations(project, write_spec, make_harness):
    spec = write_spec(("S", "pending"), ("M", "pending"), ("L", "pending"))
    sink = RecordingSink()
    orch = orchestrator(project, make_harness(WORKER), sink)

    result = await orch.run()

    assert result.state is RunState.COMPLETE
    assert result.exit_code == ExitCode.COMPLETE
    assert len(result.iterations) == 2
    assert [it.task_ids for it in result.iterations] == [("T001", "T002"), ("T003",)]
    assert result.tasks_done == result.tasks_total == 3
    assert read_snapshot(spec).is_complete
    assert orch.state is RunState.COMPLETE

    completed = [(index, task.id) for index, task in sink.args_of("task_completed")]
    assert completed == [(1, "T001"), (2, "T002"), (3, "T003")]
    assert sink.names()[-1] == "run_complete"
    assert result.stats.writes == 2


@pytest.mark.asyncio
async def test_stuck_after_threshold(project, write_spec, make_harness):
    write_spec(("S", "pending"), ("M", "pending"))
    sink = RecordingSink()
    result = await orchestrator(
        project, make_harness(IDLER), sink, iterations=10, stuck_threshold=3
    ).run()

    assert result.state is RunState.STUCK
    assert result.exit_code == 1
    assert len(result.iterations) == 3
    (stuck_args,) = sink.args_of("stuck")
    report = stuck_args[1]
    assert report.stalled_iterations == 3
    assert [t.id for t in report.unchanged] == ["T001", "T002"]


@pytest.mark.asyncio
async def test_iteration_error_stops_run(project, write_spec, make_harness):
    write_spec(("S", "pending"))
    sink = RecordingSink()
    result = await orchestrator(project, make_harness(CRASHER), sink).run()

    assert result.state is RunState.ERROR
    assert result.exit_code == 3
    assert len(result.iterations) == 1
    assert "something broke" in result.message
    assert result.failure_context.last_tool_name == "Bash"
    assert sink.names()[-1] == "run_failed"


@pytest.mark.asyncio
async def test_continue_on_error_counts_as_no_progress(project, write_spec, make_harness):
    write_spec(("S", "pending"))
    result = await orchestrator(
        project, make_harness(CRASHER), stop_on_error=False, stuck_threshold=2
    ).run()
    assert result.state is RunState.STUCK
    assert len(result.iterations) == 2
    assert all(it.status == "missing_result" for it in result.iterations)


@pytest.mark.asyncio
async def test_max_iterations(project, write_spec, make_harness):
    write_spec(("S", "pending"))
    sink = RecordingSink()
    result = await orchestrator(
        project, make_harness(IDLER), sink, iterations=2, stuck_threshold=5
    ).run()
    assert result.state is RunState.MAX_ITERATIONS
    assert result.exit_code == 2
    assert len(result.iterations) == 2
    assert result.pending_task_ids == ("T001",)
    assert sink.names()[-1] == "max_iterations"


@pytest.mark.asyncio
async def test_already_complete_runs_nothing(project, write_spec, tmp_path):
    write_spec(("S", "passed"), ("M", "failed"))
    harness = CommandHarness([str(tmp_path / "never-run")])
    result = await orchestrator(project, harness).run()
    assert result.state is RunState.COMPLETE
    assert result.iterations == ()


@pytest.mark.asyncio
async def test_no_spec_runs_to_max_iterations(project, make_harness):
    result = await orchestrator(project, make_harness(IDLER), iterations=3, stuck_threshold=1).run()
    assert result.state is RunState.MAX_ITERATIONS
    assert len(result.iterations) == 3
    assert result.tasks_total == 0


@pytest.mark.asyncio
async def test_ambiguous_spec_is_raised(project, write_spec, make_harness):
    write_spec(("S", "pending"))
    (project / ACTIVE_SPECS_DIR / "other.md").write_text("### T001: x\n")
    with pytest.raises(SpecAmbiguous):
        await orchestrator(project, make_harness(IDLER)).run()


@pytest.mark.asyncio
async def test_budget_warning_when_nothing_fits(project, write_spec, make_harness):
    write_spec(("L", "pending"))
    sink = RecordingSink()
    result = await orchestrator(project, make_harness(IDLER), sink, iterations=1, budget=2).run()
    assert result.state is RunState.MAX_ITERATIONS
    (warning,) = sink.args_of("warning")
    assert warning[0] == "budget"
    assert result.iterations[0].task_ids == ()


@pytest.mark.asyncio
async def test_interrupt_kills_child_and_raises(project, write_spec, make_harness):
    write_spec(("S", "pending"))
    orch = orchestrator(project, make_harness(SLEEPER), iterations=3)
    asyncio.get_running_loop().call_later(0.5, orch.interrupt, "SIGINT")

    with pytest.raises(RunInterrupted) as excinfo:
        await orch.run()

    assert excinfo.value.signame == "SIGINT"
    assert excinfo.value.iterations_started == 1
    assert len(orch.iterations) == 1
    assert orch.iterations[0].cancelled


@pytest.mark.asyncio
@pytest.mark.parametrize("sig", [signal.SIGINT, signal.SIGTERM])
async def test_signal_kills_child_and_raises(project, write_spec, make_harness, sig):
    write_spec(("S", "pending"))
    orch = orchestrator(project, make_harness(SLEEPER), iterations=3)
    loop = asyncio.get_running_loop()
    pids = []
    loop.call_later(0.4, lambda: pids.append(orch.current.pid))
    loop.call_later(0.5, os.kill, os.getpid(), sig)

    orch.install_signal_handlers()
    try:
        with pytest.raises(RunInterrupted) as excinfo:
            await orch.run()
    finally:
        orch.remove_signal_handlers()

    assert excinfo.value.signame == sig.name
    assert len(orch.iterations) == 1
    (pid,) = pids
    with pytest.raises(ProcessLookupError):
        os.killpg(pid, 0)


@pytest.mark.asyncio
async def test_output_dir_gets_logs_and_stats(project, write_spec, make_harness, tmp_path):
    write_spec(("S", "pending"))
    out = tmp_path / "out"
    await orchestrator(project, make_harness(WORKER), output_dir=out).run()

    stats = json.loads((out / "stats.json").read_text())
    assert stats["outcome"] == "complete"
    assert stats["totals"]["iterations"] == 1
    assert stats["settings"]["budget"] == 4
    raw = (out / "iter-1.jsonl").read_text().splitlines()
    assert json.loads(raw[-1])["type"] == "result"


# Rewrites the spec with T003 dropped and the rest passed.
SHRINKER = r'''
sys.stdin.read()
spec = next(Path(".ralphie/specs/active").glob("*.md"))
spec.write_text(
    "# Demo\n\n"
    "### T001: Task 1\n- Status: passed\n- Size: S\n\n"
    "### T002: Task 2\n- Status: passed\n- Size: M\n"
)
result()
'''


@pytest.mark.asyncio
async def test_shrunk_spec_is_accepted_when_it_persists(project, write_spec, make_harness):
    write_spec(("S", "pending"), ("M", "pending"), ("S", "pending"))
    sink = RecordingSink()
    orch = orchestrator(project, make_harness(SHRINKER), sink, iterations=4)

    result = await orch.run()

    assert result.state is RunState.COMPLETE
    assert len(result.iterations) == 1
    assert result.tasks_done == result.tasks_total == 2
    assert result.pending_task_ids == ()
    assert "spec_shrunk" in [args[0] for args in sink.args_of("warning")]
    assert orch.snapshot.total == 2


def git(cwd, *args):
    subprocess.run(
        ["git", "-c", "user.name=test", "-c", "user.email=test@example.com", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
    )


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
@pytest.mark.asyncio
async def test_todo_stub_warning_after_task_completes(project, write_spec, make_harness):
    write_spec(("S", "pending"))
    git(project, "init", "-q")
    (project / "README.md").write_text("demo\n")
    git(project, "add", "README.md")
    git(project, "commit", "-q", "-m", "init")
    (project / "app.py").write_text("def run():\n    # TODO: finish\n    pass\n")
    (project / "done.py").write_text("def ok():\n    return 1\n")
    git(project, "add", "app.py", "done.py")
    git(project, "commit", "-q", "-m", "feat: T001")

    sink = RecordingSink()
    result = await orchestrator(project, make_harness(WORKER), sink).run()

    assert result.state is RunState.COMPLETE
    (warning,) = sink.args_of("warning")
    assert warning[0] == "todo_stub"
    assert warning[2] == ["app.py"]


@pytest.mark.asyncio
async def test_no_stub_warning_outside_git(project, write_spec, make_harness):
    write_spec(("S", "pending"))
    sink = RecordingSink()
    await orchestrator(project, make_harness(WORKER), sink).run()
    assert sink.args_of("warning") == []

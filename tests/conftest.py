"""Shared fixtures: fake assistants that speak stream-json."""

import sys
import textwrap

import pytest

from ralphie.events import EventSink
from ralphie.harness import CommandHarness
from ralphie.spec import ACTIVE_SPECS_DIR

PRELUDE = r'''
import json, re, sys, time
from pathlib import Path


def emit(obj):
    print(json.dumps(obj), flush=True)


def say(text):
    emit({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}})


def tool(tool_id, name, inp, output, is_error=False):
    emit({"type": "assistant", "message": {"content": [
        {"type": "tool_use", "id": tool_id, "name": name, "input": inp}]}})
    emit({"type": "user", "message": {"content": [
        {"type": "tool_result", "tool_use_id": tool_id, "content": output, "is_error": is_error}]}})


def result(is_error=False, text="done"):
    emit({"type": "result", "subtype": "success", "is_error": is_error, "result": text,
          "total_cost_usd": 0.01, "num_turns": 1,
          "usage": {"input_tokens": 100, "output_tokens": 20}})


emit({"type": "system", "subtype": "init", "session_id": "sess-1", "model": "fake"})
'''

# Marks every task named on the prompt's "Task IDs:" line as passed.
WORKER = r'''
prompt = sys.stdin.read()
match = re.search(r"^Task IDs: (.+)$", prompt, re.M)
ids = match.group(1).split(", ") if match else []
spec = next(Path(".ralphie/specs/active").glob("*.md"))
text = spec.read_text()
for task_id in ids:
    text = re.sub(r"(### " + task_id + r":.*\n- Status: )\w+", r"\g<1>passed", text)
spec.write_text(text)
tool("t1", "Edit", {"file_path": str(spec)}, "ok")
result()
'''

# Does some work but never touches the spec.
IDLER = r'''
sys.stdin.read()
tool("t1", "Read", {"file_path": "README.md"}, "hello")
result()
'''

# Crashes without a result message.
CRASHER = r'''
sys.stdin.read()
tool("t1", "Bash", {"command": "make"}, "make: *** [all] Error 2", is_error=True)
print("fatal: something broke", file=sys.stderr, flush=True)
sys.exit(1)
'''

# Goes quiet after one line.
SLEEPER = r'''
sys.stdin.read()
say("thinking hard")
time.sleep(30)
result()
'''


class RecordingSink(EventSink):
    """Records every sink call as (method name, args)."""

    def __init__(self):
        self.calls = []

    def names(self):
        return [name for name, _ in self.calls if name != "activity"]

    def args_of(self, name):
        return [args for n, args in self.calls if n == name]


def _recorder(name):
    def method(self, *args):
        self.calls.append((name, args))

    return method


for _name in (
    "run_started",
    "iteration_started",
    "activity",
    "task_completed",
    "iteration_done",
    "warning",
    "stuck",
    "max_iterations",
    "run_complete",
    "run_failed",
):
    setattr(RecordingSink, _name, _recorder(_name))


@pytest.fixture
def make_harness(tmp_path):
    """Write a fake assistant script and return a harness that runs it."""

    def factory(body, name="assistant.py"):
        path = tmp_path / "bin" / name
        path.parent.mkdir(exist_ok=True)
        path.write_text(PRELUDE + textwrap.dedent(body))
        return CommandHarness([sys.executable, str(path)])

    return factory


@pytest.fixture
def project(tmp_path):
    """A project directory with an (empty) active specs folder."""
    root = tmp_path / "project"
    (root / ACTIVE_SPECS_DIR).mkdir(parents=True)
    return root


@pytest.fixture
def write_spec(project):
    """Write the active spec from (size, status) pairs, one per task."""

    def write(*tasks):
        lines = ["# Demo", ""]
        for i, (size, status) in enumerate(tasks, 1):
            lines += [f"### T{i:03d}: Task {i}", f"- Status: {status}", f"- Size: {size}", ""]
        path = project / ACTIVE_SPECS_DIR / "spec.md"
        path.write_text("\n".join(lines))
        return path

    return write

"""Utilities for invoking the Claude Code CLI ("claude") as a subprocess.

Two modes are used:

Streaming mode (`run_claude_stream`), used to execute a task
- Launches `claude --print --output-format stream-json --verbose
  --dangerously-skip-permissions [--model <model>]` in `cwd` and writes the prompt to stdin.
- stdout is a JSONL event stream. Each line is mirrored to the parent's stdout and to a
  per-attempt log file as it arrives, so long agent runs stay observable.
- A wall-clock timeout (default 30 minutes) kills the process; the result then reports
  `timed_out=True` and is unsuccessful.
- Success is read from the final result event: it must exist and must not carry
  `is_error: true`, and the process must exit 0.

Structured JSON mode (`run_claude_json`), used to ask yes/no questions
- Launches `claude [--model <model>] -p <prompt> --json-schema <schema> --output-format json`
  with stdin closed. The schema is compacted with `json.dumps(..., separators=(",", ":"))`.
  `--output-format json` stays last, as the CLI can be sensitive to flag ordering.
- stdout is buffered, not echoed (it can be a large event envelope); stderr streams through.

Event parsing (shared)
- `parse_events` normalizes stdout to a list of event objects: one JSON value (an array
  of events or a single object) or, failing that, JSONL with non-JSON lines dropped.
- `result_event` picks the last event whose `type` is `"result"`; an event without a
  `type` counts as a result, which covers single-object envelopes.
- Structured mode prefers the result's `structured_output` and otherwise loosely parses
  the printed `result` string.

Neither runner raises on a non-zero exit status; callers inspect the returned record.
A missing executable surfaces as `FileNotFoundError` from `subprocess.Popen`.
"""

from __future__ import annotations

import json
import selectors
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Callable

DEFAULT_TIMEOUT_S = 30 * 60


@dataclass(frozen=True)
class ClaudeJSONResult:
    exit_code: int
    stdout: str
    stderr: str
    data: Any | None


@dataclass(frozen=True)
class ClaudeStreamResult:
    exit_code: int
    success: bool
    result_text: str
    stderr: str
    timed_out: bool = False


def stream_command(*, executable: str, model: str | None) -> list[str]:
    cmd = [executable, "--print", "--output-format", "stream-json", "--verbose", "--dangerously-skip-permissions"]
    if model:
        cmd += ["--model", model]
    return cmd


def json_command(*, executable: str, model: str | None, prompt: str, schema: dict[str, Any]) -> list[str]:
    cmd = [executable]
    if model:
        cmd += ["--model", model]
    compact = json.dumps(schema, separators=(",", ":"), sort_keys=True)
    return cmd + ["-p", prompt, "--json-schema", compact, "--output-format", "json"]


def run_claude_stream(
    *,
    executable: str = "claude",
    model: str | None = None,
    prompt: str,
    cwd: Path,
    log_file: Path | None = None,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> ClaudeStreamResult:
    log: IO[str] | None = None
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        log = log_file.open("w", encoding="utf-8")

    def mirror(line: str) -> None:
        _echo(sys.stdout, line)
        if log is not None:
            _echo(log, line)

    try:
        code, out, err, timed_out = _spawn(
            stream_command(executable=executable, model=model),
            cwd=cwd,
            stdin_text=prompt,
            on_stdout=mirror,
            timeout_s=timeout_s,
        )
    finally:
        if log is not None:
            log.close()

    final = result_event(parse_events(out))
    result_text = ""
    if final is not None and isinstance(final.get("result"), str):
        result_text = final["result"].strip()
    success = not timed_out and code == 0 and final is not None and not final.get("is_error", False)
    return ClaudeStreamResult(exit_code=code, success=success, result_text=result_text, stderr=err.strip(), timed_out=timed_out)


def run_claude_json(
    *,
    executable: str = "claude",
    model: str | None = None,
    prompt: str,
    schema: dict[str, Any],
    cwd: Path,
) -> ClaudeJSONResult:
    """Run Claude with `--json-schema` and return the structured payload from its result event."""
    code, out, err, _ = _spawn(
        json_command(executable=executable, model=model, prompt=prompt, schema=schema),
        cwd=cwd,
        stdin_text=None,
        on_stdout=None,
        timeout_s=None,
    )
    data, text = _structured_payload(out)
    return ClaudeJSONResult(exit_code=code, stdout=text, stderr=err.strip(), data=data)


def parse_events(raw: str) -> list[dict[str, Any]]:
    text = raw.strip()
    if not text:
        return []
    try:
        value: Any = json.loads(text)
    except json.JSONDecodeError:
        value = [ev for ev in map(_loads_or_none, text.splitlines()) if ev is not None]
        if not value:
            value = parse_json_loose(text)
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, list):
        return []
    return [ev for ev in value if isinstance(ev, dict)]


def result_event(events: list[dict[str, Any]]) -> dict[str, Any] | None:
    for ev in reversed(events):
        if ev.get("type", "result") == "result":
            return ev
    return None


def parse_json_loose(text: str) -> Any | None:
    """Decode the first JSON object or array embedded in `text`, e.g. inside prose."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    decoder = json.JSONDecoder()
    for i, ch in enumerate(text):
        if ch not in "{[":
            continue
        try:
            value, _ = decoder.raw_decode(text, i)
        except json.JSONDecodeError:
            continue
        return value
    return None


def _structured_payload(raw: str) -> tuple[Any | None, str]:
    """`(data, text)` from a `--json-schema` run.

    `structured_output` wins when present. The printed `result` string is prose more often
    than not, so it is only a fallback and is parsed loosely.
    """
    final = result_event(parse_events(raw))
    if final is None:
        return None, raw.strip()
    structured = final.get("structured_output")
    if structured is not None:
        return structured, json.dumps(structured, indent=2, sort_keys=True, default=str)
    printed = final.get("result")
    if isinstance(printed, str) and printed.strip():
        return parse_json_loose(printed), printed.strip()
    return None, raw.strip()


def _loads_or_none(line: str) -> Any | None:
    try:
        return json.loads(line)
    except json.JSONDecodeError:
        return None


def _echo(stream: IO[str], line: str) -> None:
    stream.write(line)
    stream.flush()


def _spawn(
    cmd: list[str],
    *,
    cwd: Path,
    stdin_text: str | None,
    on_stdout: Callable[[str], None] | None,
    timeout_s: float | None,
) -> tuple[int, str, str, bool]:
    """Run `cmd` to completion. Returns `(exit_code, stdout, stderr, timed_out)`."""
    p = subprocess.Popen(
        cmd,
        cwd=str(cwd),
        text=True,
        stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        bufsize=1,
    )
    if stdin_text is not None:
        assert p.stdin is not None
        p.stdin.write(stdin_text)
        p.stdin.close()

    deadline = time.monotonic() + timeout_s if timeout_s is not None else None
    out, err, timed_out = _drain(p, on_stdout=on_stdout, deadline=deadline)
    return p.wait(), out, err, timed_out


def _drain(
    p: subprocess.Popen,
    *,
    on_stdout: Callable[[str], None] | None,
    deadline: float | None,
) -> tuple[str, str, bool]:
    """Read both pipes line by line until they close. stderr is echoed to our stderr."""
    assert p.stdout is not None and p.stderr is not None
    chunks: dict[Any, list[str]] = {p.stdout: [], p.stderr: []}
    timed_out = False

    sel = selectors.DefaultSelector()
    try:
        for stream in chunks:
            sel.register(stream, selectors.EVENT_READ)
        while sel.get_map():
            if deadline is not None and not timed_out and time.monotonic() > deadline:
                timed_out = True
                p.kill()
            for key, _mask in sel.select(timeout=0.1):
                line = key.fileobj.readline()
                if not line:
                    sel.unregister(key.fileobj)
                    continue
                chunks[key.fileobj].append(line)
                if key.fileobj is p.stderr:
                    _echo(sys.stderr, line)
                elif on_stdout is not None:
                    on_stdout(line)
    finally:
        sel.close()

    return "".join(chunks[p.stdout]), "".join(chunks[p.stderr]), timed_out

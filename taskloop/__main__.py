"""Module entrypoint for ``python -m taskloop``.

How it works
------------
Running ``python -m taskloop ...`` executes this module, which is a thin wrapper around
:func:`taskloop.cli.main`. It delegates all argument parsing and execution to the CLI
module and raises ``SystemExit(main())`` so the CLI return code becomes the process exit
status.

This is equivalent to the console-script entrypoint ``taskloop`` (configured as
``taskloop.cli:main`` in ``pyproject.toml``).

Environment variables
---------------------
- ``TASKLOOP_CONTROL_ROOT``: if set, plan paths and ``.taskloop/`` state are resolved
  relative to this directory; otherwise the current working directory is used.
- ``TASKLOOP_AGENT_CMD``: agent CLI executable when ``--agent-cmd`` is not given.

External tools (when not in ``--dry-run``)
------------------------------------------
- ``git`` for change detection, commit markers and auto-commit.
- ``claude`` (or the configured agent command) for task execution and criterion checks.

Failure modes
-------------
Invalid plans and unknown sessions are reported on stderr with exit status 1. Task failures
are recorded in the session and do not change the exit status. Anything else (for example,
a session file that cannot be written) surfaces as an uncaught exception.
"""

from __future__ import annotations

from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())

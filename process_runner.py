"""Run external commands while streaming their output.

Both helpers accept either a shell-style string (split with ``shlex``) or an
argv list. Commands are never run through a shell.
"""
from typing import Callable, List, Optional, Sequence, Tuple, Union
import logging
import shlex
import subprocess
import sys
import threading

from errors import ProcessExecutionError

logger = logging.getLogger(__name__)

Command = Union[str, Sequence[str]]
OutputCallback = Callable[[str], None]


def _to_argv(cmd: Command) -> List[str]:
    if isinstance(cmd, str):
        return shlex.split(cmd)
    return [str(part) for part in cmd]


def _echo(stream) -> OutputCallback:
    def _write(chunk: str) -> None:
        stream.write(chunk)
        stream.flush()
    return _write


def _pump(pipe, callback: OutputCallback, sink: List[str]) -> None:
    for line in iter(pipe.readline, ''):
        sink.append(line)
        callback(line)
    pipe.close()


def call_exec(cmd: Command, on_stdout: Optional[OutputCallback] = None, on_stderr: Optional[OutputCallback] = None, cwd: Optional[str] = None, env: Optional[dict] = None) -> int:
    """Run ``cmd`` to completion, streaming each output line to the callbacks.

    Without callbacks, stdout and stderr are echoed live to this process's
    own streams.

    Raises:
        ProcessExecutionError: when the command cannot be started or exits
            with a non-zero status. The captured output is attached.
    """
    argv = _to_argv(cmd)
    if not argv:
        raise ProcessExecutionError('No command given')
    on_stdout = on_stdout or _echo(sys.stdout)
    on_stderr = on_stderr or _echo(sys.stderr)

    logger.debug('Running %s', ' '.join(argv))
    try:
        proc = subprocess.Popen(argv, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, cwd=cwd, env=env)
    except OSError as e:
        raise ProcessExecutionError(f"Command failed to start: {' '.join(argv)}: {e}") from e

    out_lines: List[str] = []
    err_lines: List[str] = []
    readers = [
        threading.Thread(target=_pump, args=(proc.stdout, on_stdout, out_lines), daemon=True),
        threading.Thread(target=_pump, args=(proc.stderr, on_stderr, err_lines), daemon=True),
    ]
    for t in readers:
        t.start()
    returncode = proc.wait()
    for t in readers:
        t.join()

    if returncode != 0:
        raise ProcessExecutionError(
            f"Command failed with exit code {returncode}: {' '.join(argv)}",
            returncode=returncode,
            stdout=''.join(out_lines),
            stderr=''.join(err_lines),
        )
    return returncode


def run_script(cmd: Command) -> Tuple[str, str, Optional[ProcessExecutionError]]:
    """Run ``cmd`` capturing its output instead of raising.

    stderr is still echoed live as it arrives. Returns (stdout, stderr, error)
    where error is None on success.
    """
    stdout: List[str] = []
    stderr: List[str] = []
    echo = _echo(sys.stderr)

    def _on_stderr(line: str) -> None:
        stderr.append(line)
        echo(line)

    error = None
    try:
        call_exec(cmd, on_stdout=stdout.append, on_stderr=_on_stderr)
    except ProcessExecutionError as e:
        error = e
    return ''.join(stdout), ''.join(stderr), error

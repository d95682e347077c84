import subprocess
import shlex
import time
from collections import deque
from pathlib import Path
import os
from typing import Sequence, TypeAlias

import click

from constants import ENV_SHOW_CMDS, OUTPUT_TAIL_LINES
from stages import Cancelled, Stage, StageResult

# Seconds to wait after SIGTERM before escalating to SIGKILL.
TERMINATE_GRACE_S = 10.0


def running_in_ci() -> bool:
    return os.environ.get("CI") in ("true", "1")


def mk_env_for() -> dict[str, str]:
    env = os.environ.copy()

    # OpenSSL's build picks these up and they would override our --prefix
    # and --openssldir if inherited from the calling environment.
    for leaky in ("DESTDIR", "OPENSSL_CONF"):
        env.pop(leaky, None)

    return env


RunSpec: TypeAlias = str | Sequence[str | bytes | os.PathLike[str] | os.PathLike[bytes]]


def shellize(cmd: RunSpec) -> str:
    if isinstance(cmd, str):
        return cmd
    else:
        return " ".join(shlex.quote(os.fsdecode(x)) for x in cmd)


def common_helper_for_run(cmd: RunSpec, cmd_cwd: Path | str | None = None):
    def print_cmd_only():
        click.echo(f": {shellize(cmd)}")

    def print_cmd_within(cdpath: Path):
        click.echo(f": ( cd {cdpath.as_posix()} ; {shellize(cmd)} )")

    if os.environ.get(ENV_SHOW_CMDS, "0") == "0":
        return

    if cmd_cwd is None:
        print_cmd_only()
        return

    invoked_from = Path.cwd().resolve()
    cmd_cwd = Path(cmd_cwd).resolve()
    if cmd_cwd == invoked_from:
        print_cmd_only()
    else:
        try:
            cdpath = cmd_cwd.relative_to(invoked_from)
            print_cmd_within(cdpath)
        except ValueError:
            print_cmd_within(cmd_cwd)


def tail_of(path: Path, max_lines: int = OUTPUT_TAIL_LINES) -> str:
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            return "".join(deque(f, maxlen=max_lines))
    except FileNotFoundError:
        return ""


def _stop(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=TERMINATE_GRACE_S)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def run_command_with_progress(
    stage: Stage,
    command: RunSpec,
    stdout_file: Path,
    stderr_file: Path,
    cwd=None,
) -> StageResult:
    """
    Run a command, redirecting stdout/stderr to files, and print dots while waiting.

    Returns a StageResult carrying the exit status and the tail of each log.
    A KeyboardInterrupt stops the child and is re-raised as `Cancelled`.
    """
    common_helper_for_run(command, cwd)
    show_progress = not running_in_ci()

    with open(stdout_file, "wb") as out_f, open(stderr_file, "wb") as err_f:
        try:
            proc = subprocess.Popen(
                command,
                stdout=out_f,
                stderr=err_f,
                cwd=cwd,
                env=mk_env_for(),
            )
        except OSError as e:
            # Missing executable, unreadable cwd, and friends.
            err_f.write(f"{e}\n".encode("utf-8"))
            err_f.flush()
            return StageResult(stage, returncode=127, stderr=str(e))

        start_s = time.perf_counter()
        try:
            while proc.poll() is None:
                if show_progress:
                    print(".", end="", flush=True)
                time.sleep(0.3)
        except KeyboardInterrupt:
            _stop(proc)
            if show_progress:
                print()
            raise Cancelled(stage, returncode=proc.returncode) from None
        elapsed_s = time.perf_counter() - start_s

    if show_progress:
        # Overall time elapsed including final newline after progress dots
        print(f" ({elapsed_s:.2f} s)")

    result = StageResult(
        stage,
        returncode=proc.returncode,
        stdout=tail_of(stdout_file),
        stderr=tail_of(stderr_file),
    )

    # The redirected files are an implementation detail, not for user
    # consumption, except when something went wrong.
    if not result.ok and result.stderr:
        click.echo(result.stderr, err=True, nl=not result.stderr.endswith("\n"))
    return result


def check_output(cmd: RunSpec, cwd: Path | None = None) -> bytes:
    common_helper_for_run(cmd, cwd)

    return subprocess.check_output(
        cmd,
        cwd=cwd,
        stderr=subprocess.PIPE,
        env=mk_env_for(),
    )

"""Identify, probe and terminate the processes that take part in epochs.

A participant is identified by the id of its process.
"""

from __future__ import annotations

import errno
import os
import signal


def get_self_id() -> int:
    """Unique id of the calling participant: its process id."""
    return os.getpid()


def _failure(action: str, pid: int, exc: OSError) -> RuntimeError:
    return RuntimeError(
        f"Error in ParticipantManager {action} caller pid: {get_self_id()} "
        f"target pid: {pid} ({errno.errorcode.get(exc.errno or 0, exc.errno)})"
    )


def is_alive(pid: int) -> bool:
    """Whether a process with id ``pid`` exists.

    A process that does not exist (or was already reaped) counts as dead.
    Any other failure to probe it, such as lacking permission to signal it,
    raises :class:`RuntimeError`.
    """
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except OSError as exc:
        raise _failure("is_alive() kill(0)", pid, exc) from exc
    return True


def terminate(pid: int) -> None:
    """Kill the participant ``pid`` with SIGKILL.

    Idempotent: a process that no longer exists is left alone. Any other
    failure raises :class:`RuntimeError`.
    """
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    except OSError as exc:
        raise _failure("terminate() kill(SIGKILL)", pid, exc) from exc
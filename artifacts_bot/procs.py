"""Process liveness check shared by spill recovery and the supervisor."""

import os


def pid_alive(pid: int | None) -> bool:
    """True when a process with this pid exists (checked with signal 0)."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user.
        return True
    return True

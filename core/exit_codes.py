"""
Process exit codes for the sync daemon and out-of-band jobs.

Operators and supervisors (systemd, cron wrappers) tell failure classes
apart by these codes.
"""

import enum


class ExitCode(enum.IntEnum):
    OK = 0
    GENERAL_ERROR = 1
    CONFIGURATION_ERROR = 2
    LOCK_CONTENTION = 3
    INTEGRITY_HALT = 4
    PREVIOUS_FAILURE = 5
    PRECONDITION_FAILED = 6

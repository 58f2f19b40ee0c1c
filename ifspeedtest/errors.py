"""Error taxonomy for ifspeedtest.

Exceptions are raised only where a failure has to cross a component boundary
(target resolution, privilege escalation, missing tools). Failures that stay
local to one probe run are classified with a FailureKind and carried on the
result records instead, so a batch never aborts because one target failed.
"""

from enum import Enum


class FailureKind(Enum):
    """Classification of a single probe failure."""

    INVALID_TARGET = "invalid_target"
    PRIVILEGE_REQUIRED = "privilege_required"
    PROBE_UNREACHABLE = "probe_unreachable"
    CONNECTION_FAILURE = "connection_failure"
    PARSE_FAILURE = "parse_failure"
    PORT_EXHAUSTED = "port_exhausted"


class IfSpeedTestError(Exception):
    """Base class for ifspeedtest errors."""


class InvalidTarget(IfSpeedTestError):
    """Target is not a valid IP literal or the domain could not be resolved."""


class PrivilegeRequired(IfSpeedTestError):
    """Probe needs elevated privileges that could not be obtained."""


class ParseFailure(IfSpeedTestError):
    """Probe output did not have the expected shape."""


class ToolNotFound(IfSpeedTestError):
    """A probe binary is missing or cannot be executed."""

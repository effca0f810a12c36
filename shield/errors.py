"""Exceptions raised by the policy engine.

Two failure families matter to callers:

  - ConfigurationError: a window, limit or threshold that cannot produce a
    verdict (zero window, zero limit, malformed config file).  Fatal to the
    call that hit it, never a security decision.
  - TransientDependencyError: a store that cannot be reached.  Detectors fail
    open on it, but loudly (log + alert).
"""


class ShieldError(Exception):
    """Base class for all policy engine errors."""


class ConfigurationError(ShieldError, ValueError):
    """Invalid policy configuration (e.g. a window or limit <= 0)."""


class TransientDependencyError(ShieldError):
    """A backing store (event log, IP lists) is unreachable."""

"""
Exception hierarchy for the iterative shape grammar engine.

Configuration errors are reported to the caller and leave state unchanged.
Geometry rejections and missing candidates are recovered inside the
generation loop and never escape it.
"""


class ISGError(Exception):
    """Base class for all shape grammar errors."""


class ConfigurationError(ISGError):
    """Invalid setup: boundary, selection or rule definition input."""


class NoBoundaryError(ConfigurationError):
    """No boundary entity was given or found in the scene."""


class AmbiguousBoundaryError(ConfigurationError):
    """More than one entity in the scene is tagged as boundary."""


class InvalidBoundaryError(ConfigurationError):
    """Boundary entity does not contain exactly one face."""


class SelectionError(ConfigurationError):
    """A picked selection is not compatible with the requested operation."""


class UnknownRuleError(ConfigurationError):
    """A rule id does not name a defined rule."""


class GeometryRejection(ISGError):
    """A rule application produced shapes outside the boundary or overlapping."""


class NoCandidateError(ISGError):
    """No shape in the solution matches a rule's pattern."""


class IdentityCollisionError(ISGError):
    """UID generation kept colliding with registered UIDs."""


class PersistedStateInconsistency(ISGError):
    """A persisted rule references an entity that no longer exists."""

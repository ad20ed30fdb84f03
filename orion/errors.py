"""
Exception hierarchy.

Transient errors (feed fetch, snapshot download, lock contention) are retried or
deferred to the next collection cycle. Integrity errors mean the timetable
snapshot itself is corrupt; queries raise them to the caller.
"""


class OrionError(Exception):
    """Base class for all errors raised by orion"""


class UnknownAgencyError(OrionError, KeyError):
    """The requested agency is not configured"""


class FeedFetchError(OrionError):
    """A GTFS-realtime feed could not be fetched (timeout, network, non-200)"""


class SnapshotDownloadError(OrionError):
    """A GTFS snapshot could not be downloaded"""


class SnapshotLockedError(OrionError):
    """A GTFS snapshot stayed locked after every open attempt"""


class TimetableIntegrityError(OrionError):
    """The timetable snapshot violates an invariant"""


class TripIdsNotUniqueError(TimetableIntegrityError):
    """The same trip_id came out of the scheduled-position lookup twice"""


class ShapeDistanceError(TimetableIntegrityError):
    """Stop times carry shape_dist_traveled but the trip has no usable maximum"""


class GeometryError(OrionError):
    """A shape operation could not be carried out"""


class NoGeometryError(GeometryError):
    """The shape has no points"""

"""Exception hierarchy shared by the roomprint packages."""


class RoomprintError(Exception):
    """Base class for errors raised by roomprint."""


class StorageError(RoomprintError):
    """Reading or writing a stored record failed."""


class ScanNotFoundError(StorageError):
    """No stored scan has the requested id."""

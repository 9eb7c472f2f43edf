"""
Stratum error taxonomy.

Structural conflicts (a column that already exists, an index that is already
gone) are absorbed by the existence guards in stratum.migrations.schema and
never surface here. Unrecognized embedded discovery records are passed
through by the reshaper and never surface here either.
"""

from typing import Optional


class StratumError(Exception):
    """Base exception for stratum errors"""
    pass


class ConfigError(StratumError):
    """Raised when config.yaml cannot be parsed or holds invalid values"""
    pass


class MigrationError(StratumError):
    """Base exception for a migration unit that could not be applied"""

    def __init__(self, message: str, version: Optional[int] = None):
        super().__init__(message)
        self.version = version


class OrderingViolation(MigrationError):
    """Raised when a unit is applied out of sequence or the history has gaps"""
    pass


class DataIntegrityViolation(MigrationError):
    """Raised when a constraint fails inside a unit; the unit is rolled back"""
    pass


class MigrationFailed(MigrationError):
    """Raised for any other failure inside a unit; the unit is rolled back"""
    pass

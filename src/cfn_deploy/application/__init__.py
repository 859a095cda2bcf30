"""Application repository checks."""

from .companion import CompanionCheck, CompanionFileChecker, CompanionReport

__all__ = ["CompanionCheck", "CompanionFileChecker", "CompanionReport"]

"""Exception types raised by Profile Analyzer."""


class ProfileAnalyzerError(Exception):
    """Base class for all analyzer errors."""


class TraceSourceError(ProfileAnalyzerError):
    """The trace file could not be opened or read. Fatal for a run."""


class SymbolLoadError(ProfileAnalyzerError):
    """A symbol provider could not load symbols for a module."""

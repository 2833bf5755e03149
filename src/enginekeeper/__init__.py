"""enginekeeper - resolve, self-update and supervise an analysis-engine binary."""

__version__ = "0.3.2"

"""HRM Labs MongoDB replication automation and dashboard."""

__version__ = "2.0.0"

"""Content Sync: keep content objects consistent across connected sites."""

__version__ = "1.0.0"

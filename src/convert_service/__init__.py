"""
Conversion job service package.

The :mod:`convert_service.jobs` package holds the orchestration core (job
records, stores, worker pools, callbacks and the reaper). The FastAPI intake
in :mod:`convert_service.webapi` is a thin front-end over it.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"

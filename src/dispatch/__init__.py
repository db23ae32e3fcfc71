"""Logistics dispatch core: geospatial math, route heuristics, time windows, status rules and the offline action queue."""

__version__ = "0.1.0"

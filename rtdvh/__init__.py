# rtdvh package initialization
# Cumulative dose-volume histograms, V/D metrics and DVH table I/O
# on SimpleITK dose grids and structure masks.

__version__ = "1.0.0"

__all__ = [
    "config",
    "errors",
    "grid",
    "geometry",
    "statistics",
    "histogram",
    "metrics",
    "serialization",
    "comparison",
    "dvh",
]

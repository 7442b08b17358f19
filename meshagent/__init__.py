"""Node agent core: artifact storage, component supervision, management data and health."""

__version__ = "0.1.0"
__all__ = [
    "storage",
    "types",
    "utils",
    "supervisor",
    "overview",
    "history",
    "volumes",
    "discover",
    "monitor",
]
"""Backend profile models and loader exports."""

from .loader import BackendProfile, ProfileLoadError, ProfileLoader
from .models import BackendKind

__all__ = [
    "BackendKind",
    "BackendProfile",
    "ProfileLoadError",
    "ProfileLoader",
]

"""Execution profile models, loader and selector exports."""

from .loader import ProfileLoadError, ProfileLoader
from .models import DEFAULT_PROFILE_ID, ExecutionProfile, default_profile
from .selector import ProfileSelector

__all__ = [
    "DEFAULT_PROFILE_ID",
    "ExecutionProfile",
    "ProfileLoadError",
    "ProfileLoader",
    "ProfileSelector",
    "default_profile",
]

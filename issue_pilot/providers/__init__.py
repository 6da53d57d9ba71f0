"""Collaborator interfaces for the generation backend and the platform.

Key Components:
    - GenerationProvider: Abstract base for AI generation backends
    - Platform: Abstract base for VCS / issue-tracking platforms
"""

from issue_pilot.providers.base import GenerationProvider, Platform

__all__ = ["GenerationProvider", "Platform"]

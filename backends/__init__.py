# -*- coding: utf-8 -*-
"""
Remote backends for Sora Studio

Provides:
- Sora generation (submit, poll, fetch)
- YouTube publishing
- Simulated drop-ins for both
- Optional S3/R2 object storage for artifacts
"""

from .storage import ObjectStorage, get_storage
from .sora import TaskSubmitter, TaskPoller, ArtifactFetcher, PollResult
from .youtube import YouTubePublisher
from .simulation import (
    SimulatedTaskSubmitter,
    SimulatedTaskPoller,
    SimulatedArtifactFetcher,
    SimulatedPublisher,
)

__all__ = [
    # Generation
    'TaskSubmitter',
    'TaskPoller',
    'ArtifactFetcher',
    'PollResult',

    # Publishing
    'YouTubePublisher',

    # Simulation
    'SimulatedTaskSubmitter',
    'SimulatedTaskPoller',
    'SimulatedArtifactFetcher',
    'SimulatedPublisher',

    # Storage
    'ObjectStorage',
    'get_storage',
]

"""
Simulation Package - synthetic demo trajectories, isolated from the store.
"""
from .progression import (
    ProgressionParameters,
    ProgressionProfile,
    SyntheticCycle,
    SyntheticProgressionGenerator,
    SyntheticTrajectory,
)

__all__ = [
    "ProgressionParameters",
    "ProgressionProfile",
    "SyntheticCycle",
    "SyntheticProgressionGenerator",
    "SyntheticTrajectory",
]

"""
State management for the ingestion pipeline.

- Linear per-video state (VideoState, Stage, LinearStateMachine)
"""

from .linear_state_model import (
    VideoState,
    Stage,
    STAGES,
    STAGES_BY_NAME,
    LinearStateMachine,
    StateTransitionResult,
    get_stage,
)

__all__ = [
    'VideoState',
    'Stage',
    'STAGES',
    'STAGES_BY_NAME',
    'LinearStateMachine',
    'StateTransitionResult',
    'get_stage',
]

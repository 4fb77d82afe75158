"""
Processing steps, one per pipeline stage.

Each runner takes a StageContext and returns a StageOutput; the orchestrator
owns claiming, committing and failure bookkeeping.
"""
from .base import StageContext, StageOutput
from .download import run_download
from .upload import run_upload
from .transcribe import run_transcribe
from .score import run_score
from .index import run_index

STEP_RUNNERS = {
    'download': run_download,
    'upload': run_upload,
    'transcribe': run_transcribe,
    'score': run_score,
    'index': run_index,
}

__all__ = ['StageContext', 'StageOutput', 'STEP_RUNNERS']

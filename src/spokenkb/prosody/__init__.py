from .features import ProsodyFeatureVector
from .emphasis import EmphasisWeights, compute_emphasis_scores
from .extractor import ProsodyConfig, ProsodyFeatureExtractor
from .audio import decode_audio, slice_samples

__all__ = [
    'ProsodyFeatureVector',
    'EmphasisWeights',
    'compute_emphasis_scores',
    'ProsodyConfig',
    'ProsodyFeatureExtractor',
    'decode_audio',
    'slice_samples',
]

"""Audio decoding for prosody extraction."""
import io

import librosa
import numpy as np

from spokenkb.utils.error_codes import ErrorCode, UnsupportedInput


def decode_audio(data: bytes, sample_rate: int = 16000) -> np.ndarray:
    """Decode encoded audio bytes to mono float32 samples at sample_rate.

    Raises UnsupportedInput when the bytes are not decodable audio or decode
    to nothing.
    """
    if not data:
        raise UnsupportedInput("Audio payload is empty", error_code=ErrorCode.CORRUPT_MEDIA)
    try:
        samples, _ = librosa.load(io.BytesIO(data), sr=sample_rate, mono=True)
    except Exception as e:
        raise UnsupportedInput(f"Could not decode audio: {e}", error_code=ErrorCode.UNSUPPORTED_MEDIA) from e
    if samples.size == 0:
        raise UnsupportedInput("Audio decoded to zero samples", error_code=ErrorCode.CORRUPT_MEDIA)
    return samples.astype(np.float32, copy=False)


def slice_samples(samples: np.ndarray, sample_rate: int, start: float, end: float) -> np.ndarray:
    """Samples between two offsets in seconds, clipped to the signal."""
    first = max(0, int(round(start * sample_rate)))
    last = min(len(samples), int(round(end * sample_rate)))
    if last <= first:
        return samples[0:0]
    return samples[first:last]

"""
Deterministic artifact key layout and checksum helpers.

    channels/{channel_id}/playlists/{playlist_id|_unlisted}/videos/{video_id}/audio.bin
                                                                         /transcript.json
                                                                         /prosody.json
"""
import hashlib
import re
from typing import Dict, Optional

from spokenkb.database.models.base import ArtifactKind

ARTIFACT_FILENAMES = {
    ArtifactKind.AUDIO: 'audio.bin',
    ArtifactKind.TRANSCRIPT: 'transcript.json',
    ArtifactKind.PROSODY: 'prosody.json',
}

UNLISTED_PLAYLIST = '_unlisted'
UNKNOWN_CHANNEL = '_unknown'

_UNSAFE = re.compile(r'[^A-Za-z0-9_.\-]')


def compute_checksum(data: bytes) -> str:
    """sha256 hex digest of a blob."""
    return hashlib.sha256(data).hexdigest()


def _safe_component(value: Optional[str], fallback: str) -> str:
    if not value:
        return fallback
    safe = _UNSAFE.sub('_', str(value))
    # '.' and '..' would be read as relative path segments
    return '_' * len(safe) if set(safe) == {'.'} else safe


class ArtifactKeyBuilder:
    """Builds artifact store keys from channel/playlist/video identifiers."""

    def __init__(self, prefix: str = 'channels'):
        self.prefix = prefix.strip('/')

    def video_prefix(self, channel_id: Optional[str], playlist_id: Optional[str], video_id: str) -> str:
        """Base path shared by every artifact of a video"""
        return (
            f"{self.prefix}/{_safe_component(channel_id, UNKNOWN_CHANNEL)}"
            f"/playlists/{_safe_component(playlist_id, UNLISTED_PLAYLIST)}"
            f"/videos/{_safe_component(video_id, '_')}"
        )

    def key_for(self, video, kind: ArtifactKind) -> str:
        """Key of one artifact for a Video row (or anything with the same attributes)"""
        kind = ArtifactKind(kind)
        base = self.video_prefix(video.channel_id, video.playlist_id, video.video_id)
        return f"{base}/{ARTIFACT_FILENAMES[kind]}"

    def keys_for(self, video) -> Dict[str, str]:
        """All artifact keys of a video, by kind value"""
        return {kind.value: self.key_for(video, kind) for kind in ArtifactKind}

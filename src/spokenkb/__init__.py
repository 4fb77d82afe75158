"""
spokenkb - emphasis-aware knowledge base over long-form spoken audio.

Videos are discovered, downloaded, stored, transcribed, segmented, scored for
prosodic emphasis and indexed by a per-video persisted state machine. Indexed
segments are served by a hybrid lexical/vector/emphasis retrieval engine.
"""

__version__ = "0.4.0"

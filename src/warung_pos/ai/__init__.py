"""Commentary ("kepo") generation for completed sales."""

from .commentary import CommentaryConfig, KepoCommentator, cleanup_audio

__all__ = ["CommentaryConfig", "KepoCommentator", "cleanup_audio"]

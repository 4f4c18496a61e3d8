"""Utility functions for the Scene Media Pipeline."""

from scene_pipeline.utils.io_utils import create_job_work_dir, slugify
from scene_pipeline.utils.text_utils import count_spoken_chars, estimate_spoken_duration, split_sentences

__all__ = [
    "create_job_work_dir",
    "slugify",
    "count_spoken_chars",
    "estimate_spoken_duration",
    "split_sentences",
]

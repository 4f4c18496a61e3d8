"""I/O utility functions for file and directory operations."""

# This module is part of scene_pipeline.utils package

import re
from pathlib import Path


def slugify(text: str) -> str:
    """
    Convert text to a filesystem-safe slug.

    Args:
        text: Input text to slugify.

    Returns:
        Filesystem-safe slug string.
    """
    # Convert to lowercase
    text = text.lower()
    # Replace spaces and special characters with hyphens
    text = re.sub(r"[^\w\s-]", "", text)
    text = re.sub(r"[-\s]+", "-", text)
    # Remove leading/trailing hyphens
    text = text.strip("-")
    # Limit length
    if len(text) > 100:
        text = text[:100].rstrip("-")
    return text or "job"


def create_job_work_dir(base_dir: str, job_id: str) -> Path:
    """
    Create the working directory for a job.

    Re-running the same job reuses its directory so completed clips survive
    a retry of the failed scenes.

    Args:
        base_dir: Base directory for outputs (e.g., "outputs").
        job_id: Job identifier.

    Returns:
        Path to the created directory.
    """
    work_dir = Path(base_dir) / slugify(job_id)
    for sub_dir in ("media", "audio", "subtitles", "clips"):
        (work_dir / sub_dir).mkdir(parents=True, exist_ok=True)
    return work_dir


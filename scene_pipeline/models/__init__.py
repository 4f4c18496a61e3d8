"""Data models for scenes, cues and jobs."""

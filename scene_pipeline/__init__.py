"""Scene Media Pipeline - narrated, captioned scene clips joined into one video."""

__version__ = "1.0.0"

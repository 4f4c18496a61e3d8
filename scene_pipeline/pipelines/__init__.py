"""Pipeline orchestrators for the Scene Media Pipeline."""

from scene_pipeline.pipelines.run_scene_pipeline import main
from scene_pipeline.pipelines.scene_media_pipeline import SceneMediaPipeline
from scene_pipeline.pipelines.stage_pipeliner import StagePipeliner, StageOutcome

__all__ = ["SceneMediaPipeline", "StagePipeliner", "StageOutcome", "main"]

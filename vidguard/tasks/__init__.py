from .reanalyze import reanalyze_videos
from .runner import TaskRunner
from .video import VideoPipeline, acquire_lock, build_pipeline

__all__ = ["reanalyze_videos", "TaskRunner", "VideoPipeline", "acquire_lock", "build_pipeline"]

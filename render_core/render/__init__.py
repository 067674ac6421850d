from render_core.render.concat_compositor import compile_concat, has_track_overlaps
from render_core.render.layer_compositor import compile_overlay
from render_core.render.pipeline import ExportPipeline, RenderProgress, RenderStatus
from render_core.render.runner import ProcessRegistry, ProcessRunner, RunErrorKind, RunResult
from render_core.render.timeline_slice import CompiledGraph

__all__ = [
    "CompiledGraph",
    "ExportPipeline",
    "ProcessRegistry",
    "ProcessRunner",
    "RenderProgress",
    "RenderStatus",
    "RunErrorKind",
    "RunResult",
    "compile_concat",
    "compile_overlay",
    "has_track_overlaps",
]

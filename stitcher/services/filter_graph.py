"""Typed ffmpeg filter graphs for clip concatenation.

Graphs are assembled as an ordered list of :class:`FilterNode` objects and only
turned into ``-filter_complex`` text by :meth:`FilterGraph.render`, so the
branch layout can be checked without comparing strings.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, List, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

from stitcher.config import Settings

VIDEO_OUT = "outv"
AUDIO_OUT = "outa"


class NodeRole(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    SILENCE = "silence"
    CONCAT_VIDEO = "concat_video"
    CONCAT_AUDIO = "concat_audio"


class OutroCase(str, Enum):
    BOTH_AUDIO = "both_audio"
    MAIN_AUDIO_ONLY = "main_audio_only"
    OUTRO_AUDIO_ONLY = "outro_audio_only"
    NO_AUDIO = "no_audio"


class CanonicalFormat(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: int = 1920
    height: int = 1080
    fps: int = 30
    pixel_format: str = "yuv420p"
    sample_rate: int = 44100
    channel_layout: str = "stereo"

    @classmethod
    def from_settings(cls, settings: Settings) -> "CanonicalFormat":
        return cls(
            width=settings.target_width,
            height=settings.target_height,
            fps=settings.target_fps,
            pixel_format=settings.pixel_format,
            sample_rate=settings.sample_rate,
            channel_layout=settings.channel_layout,
        )


class ClipSpec(BaseModel):
    """A probed input as seen by the graph: its audio flag and duration."""

    model_config = ConfigDict(frozen=True)

    has_audio: bool
    duration: float


class Filter(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    args: Tuple[str, ...] = ()
    options: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def of(cls, name: str, *args: Any, **options: Any) -> "Filter":
        return cls(
            name=name,
            args=tuple(str(arg) for arg in args),
            options=tuple((key, str(value)) for key, value in options.items()),
        )

    def option(self, key: str) -> str | None:
        for name, value in self.options:
            if name == key:
                return value
        return None

    def render(self) -> str:
        parts = list(self.args) + [f"{key}={value}" for key, value in self.options]
        if not parts:
            return self.name
        return f"{self.name}=" + ":".join(parts)


class FilterNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: NodeRole
    inputs: Tuple[str, ...]
    filters: Tuple[Filter, ...]
    outputs: Tuple[str, ...]

    def render(self) -> str:
        sources = "".join(f"[{label}]" for label in self.inputs)
        sinks = "".join(f"[{label}]" for label in self.outputs)
        return sources + ",".join(item.render() for item in self.filters) + sinks


class FilterGraph(BaseModel):
    nodes: List[FilterNode]
    outputs: Tuple[str, ...]

    @property
    def has_audio_output(self) -> bool:
        return AUDIO_OUT in self.outputs

    def nodes_with_role(self, role: NodeRole) -> List[FilterNode]:
        return [node for node in self.nodes if node.role == role]

    def map_args(self) -> List[str]:
        args: List[str] = []
        for label in self.outputs:
            args.extend(["-map", f"[{label}]"])
        return args

    def render(self) -> str:
        return ";".join(node.render() for node in self.nodes)


def _duration(value: float) -> str:
    return f"{value:.3f}"


def video_branch(index: int, canonical: CanonicalFormat) -> FilterNode:
    """Scale to fit, pad to the exact frame, then lock SAR, frame rate and pixel format."""
    return FilterNode(
        role=NodeRole.VIDEO,
        inputs=(f"{index}:v",),
        filters=(
            Filter.of(
                "scale",
                w=canonical.width,
                h=canonical.height,
                force_original_aspect_ratio="decrease",
            ),
            Filter.of(
                "pad",
                w=canonical.width,
                h=canonical.height,
                x="(ow-iw)/2",
                y="(oh-ih)/2",
                color="black",
            ),
            Filter.of("setsar", 1),
            Filter.of("fps", canonical.fps),
            Filter.of("format", canonical.pixel_format),
        ),
        outputs=(f"v{index}",),
    )


def audio_branch(index: int, clip: ClipSpec, canonical: CanonicalFormat) -> FilterNode:
    if clip.duration <= 0:
        raise ValueError(f"clip {index} has no usable duration")
    return FilterNode(
        role=NodeRole.AUDIO,
        inputs=(f"{index}:a",),
        filters=(
            Filter.of("aresample", canonical.sample_rate),
            Filter.of("aformat", sample_fmts="fltp", channel_layouts=canonical.channel_layout),
            Filter.of("apad"),
            Filter.of("atrim", duration=_duration(clip.duration)),
            Filter.of("asetpts", "PTS-STARTPTS"),
        ),
        outputs=(f"a{index}",),
    )


def silence_branch(index: int, clip: ClipSpec, canonical: CanonicalFormat) -> FilterNode:
    if clip.duration <= 0:
        raise ValueError(f"clip {index} has no usable duration")
    return FilterNode(
        role=NodeRole.SILENCE,
        inputs=(),
        filters=(
            Filter.of(
                "anullsrc",
                channel_layout=canonical.channel_layout,
                sample_rate=canonical.sample_rate,
            ),
            Filter.of("aformat", sample_fmts="fltp", channel_layouts=canonical.channel_layout),
            Filter.of("atrim", duration=_duration(clip.duration)),
            Filter.of("asetpts", "PTS-STARTPTS"),
        ),
        outputs=(f"a{index}",),
    )


def build_stitch_graph(clips: Sequence[ClipSpec], canonical: CanonicalFormat) -> FilterGraph:
    """Concatenate ``clips`` in the given order.

    Branch ``i`` always belongs to input ``i``. When any clip carries audio,
    clips without it get a silent branch of their own duration so the audio
    concat sees exactly one contribution per input.
    """
    if not clips:
        raise ValueError("at least one clip is required")
    count = len(clips)
    nodes: List[FilterNode] = [video_branch(index, canonical) for index in range(count)]
    nodes.append(
        FilterNode(
            role=NodeRole.CONCAT_VIDEO,
            inputs=tuple(f"v{index}" for index in range(count)),
            filters=(Filter.of("concat", n=count, v=1, a=0),),
            outputs=(VIDEO_OUT,),
        )
    )
    if not any(clip.has_audio for clip in clips):
        return FilterGraph(nodes=nodes, outputs=(VIDEO_OUT,))

    for index, clip in enumerate(clips):
        if clip.has_audio:
            nodes.append(audio_branch(index, clip, canonical))
        else:
            nodes.append(silence_branch(index, clip, canonical))
    nodes.append(
        FilterNode(
            role=NodeRole.CONCAT_AUDIO,
            inputs=tuple(f"a{index}" for index in range(count)),
            filters=(Filter.of("concat", n=count, v=0, a=1),),
            outputs=(AUDIO_OUT,),
        )
    )
    return FilterGraph(nodes=nodes, outputs=(VIDEO_OUT, AUDIO_OUT))


def outro_case(main: ClipSpec, outro: ClipSpec) -> OutroCase:
    if main.has_audio and outro.has_audio:
        return OutroCase.BOTH_AUDIO
    if main.has_audio:
        return OutroCase.MAIN_AUDIO_ONLY
    if outro.has_audio:
        return OutroCase.OUTRO_AUDIO_ONLY
    return OutroCase.NO_AUDIO


def build_outro_graph(main: ClipSpec, outro: ClipSpec, canonical: CanonicalFormat) -> FilterGraph:
    """Two-input graph appending ``outro`` (input 1) after ``main`` (input 0)."""
    return build_stitch_graph([main, outro], canonical)

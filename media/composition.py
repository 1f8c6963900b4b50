"""Declarative composition plans handed to ffmpeg.

Planning is pure: a plan is derived from the job's mode and duration, the local
segment paths, and the output paths issued by the staging area. Nothing here
touches the filesystem or spawns processes; see :mod:`media.ffmpeg` for that.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Mapping, Optional

ROLE_MAIN = "main"
ROLE_BACKGROUND = "background"

MODE_COMBINED = "combined"
MODE_SEPARATE = "separate"
MODE_AUDIO = "audio"

FIT_COVER = "cover"
FIT_CONTAIN = "contain"
FIT_STRETCH = "stretch"

LAYOUT_VSTACK = "vstack"
LAYOUT_NONE = "none"

SOURCE_ROLES = {
    MODE_COMBINED: (ROLE_MAIN, ROLE_BACKGROUND),
    MODE_SEPARATE: (ROLE_MAIN, ROLE_BACKGROUND),
    MODE_AUDIO: (ROLE_MAIN,),
}

OUTPUT_ROLES = {
    MODE_COMBINED: (("combined", ".mp4"),),
    MODE_SEPARATE: (("main_rendered", ".mp4"), ("background_rendered", ".mp4")),
    MODE_AUDIO: (("audio", ".mp3"),),
}

_EPSILON = 1e-6


@dataclass(frozen=True)
class CompositionSettings:
    width: int = 1080
    height: int = 1920
    fps: int = 30
    main_zoom: float = 1.2
    video_codec: str = "libx264"
    preset: str = "veryfast"
    crf: int = 28
    profile: Optional[str] = "baseline"
    pix_fmt: str = "yuv420p"
    audio_bitrate: str = "128k"

    @classmethod
    def from_config(cls, config):
        cfg = config or {}
        canvas = cfg.get("canvas") or {}
        video = cfg.get("video") or {}
        defaults = cls()
        return cls(
            width=int(canvas.get("width", defaults.width)),
            height=int(canvas.get("height", defaults.height)),
            fps=int(cfg.get("fps", defaults.fps)),
            main_zoom=float(cfg.get("main_zoom", defaults.main_zoom)),
            video_codec=str(video.get("codec", defaults.video_codec)),
            preset=str(video.get("preset", defaults.preset)),
            crf=int(video.get("crf", defaults.crf)),
            profile=video.get("profile", defaults.profile),
            pix_fmt=str(video.get("pix_fmt", defaults.pix_fmt)),
            audio_bitrate=str(cfg.get("audio_bitrate", defaults.audio_bitrate)),
        )


@dataclass(frozen=True)
class TrimWindow:
    start: float
    duration: float


@dataclass(frozen=True)
class PlanInput:
    path: str
    role: str
    trim: TrimWindow


@dataclass(frozen=True)
class FitGeometry:
    scale_width: int
    scale_height: int
    offset_x: int
    offset_y: int


def _even_ceil(value):
    rounded = math.ceil(value - _EPSILON)
    return rounded + (rounded % 2)


def _even_floor(value):
    rounded = int(math.floor(value + _EPSILON))
    return max(2, rounded - (rounded % 2))


def fit_geometry(source_size, target_size, fit=FIT_COVER, zoom=1.0) -> FitGeometry:
    """Compute scale dimensions and centered crop (cover) or pad (contain) offsets.

    cover: scale until the target is fully covered, then crop the overflow
    around the center. ``zoom`` stretches only the height the source must
    cover, so portrait sources are not enlarged past the target width.
    contain: scale until the source fits, then pad. stretch: scale to the target exactly.
    """
    src_w, src_h = source_size
    dst_w, dst_h = target_size
    if src_w <= 0 or src_h <= 0 or dst_w <= 0 or dst_h <= 0:
        raise ValueError("source and target dimensions must be positive")
    if fit == FIT_STRETCH:
        return FitGeometry(dst_w, dst_h, 0, 0)
    if fit == FIT_CONTAIN:
        factor = min(dst_w / src_w, dst_h / src_h)
        scaled_w = min(dst_w, _even_floor(src_w * factor))
        scaled_h = min(dst_h, _even_floor(src_h * factor))
        return FitGeometry(scaled_w, scaled_h, (dst_w - scaled_w) // 2, (dst_h - scaled_h) // 2)
    if fit != FIT_COVER:
        raise ValueError(f"unknown fit mode: {fit}")
    factor = max(dst_w / src_w, dst_h * max(1.0, zoom) / src_h)
    scaled_w = max(dst_w, _even_ceil(src_w * factor))
    scaled_h = max(dst_h, _even_ceil(src_h * factor))
    return FitGeometry(scaled_w, scaled_h, (scaled_w - dst_w) // 2, (scaled_h - dst_h) // 2)


@dataclass(frozen=True)
class TransformStep:
    input_index: int
    width: int
    height: int
    fit: str = FIT_COVER
    zoom: float = 1.0
    fps: Optional[int] = 30
    source_size: Optional[tuple[int, int]] = None

    def filter_chain(self) -> str:
        steps = []
        if self.fps:
            steps.append(f"fps={self.fps}")
        w, h = self.width, self.height
        if self.source_size:
            geometry = fit_geometry(self.source_size, (w, h), self.fit, self.zoom)
            steps.append(f"scale={geometry.scale_width}:{geometry.scale_height}")
            if self.fit == FIT_COVER:
                steps.append(f"crop={w}:{h}:{geometry.offset_x}:{geometry.offset_y}")
            elif self.fit == FIT_CONTAIN:
                steps.append(f"pad={w}:{h}:{geometry.offset_x}:{geometry.offset_y}")
        elif self.fit == FIT_COVER:
            zh = _even_ceil(h * max(1.0, self.zoom))
            steps.append(f"scale={w}:{zh}:force_original_aspect_ratio=increase:force_divisible_by=2")
            steps.append(f"crop={w}:{h}:(in_w-{w})/2:(in_h-{h})/2")
        elif self.fit == FIT_CONTAIN:
            steps.append(f"scale={w}:{h}:force_original_aspect_ratio=decrease:force_divisible_by=2")
            steps.append(f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2")
        else:
            steps.append(f"scale={w}:{h}")
        steps.append("setsar=1")
        return ",".join(steps)


@dataclass(frozen=True)
class CombineStep:
    layout: str = LAYOUT_VSTACK
    audio_from: Optional[int] = 0


@dataclass(frozen=True)
class OutputSpec:
    role: str
    path: str
    inputs: tuple[int, ...]
    duration: float
    include_video: bool = True
    include_audio: bool = True
    container: str = "mp4"
    video_codec: str = "libx264"
    preset: str = "veryfast"
    crf: int = 28
    profile: Optional[str] = "baseline"
    pix_fmt: str = "yuv420p"
    audio_codec: str = "aac"
    audio_bitrate: Optional[str] = "128k"
    audio_quality: Optional[int] = None


@dataclass(frozen=True)
class CompositionPlan:
    inputs: tuple[PlanInput, ...]
    transforms: tuple[TransformStep, ...]
    combine: CombineStep
    outputs: tuple[OutputSpec, ...] = field(default_factory=tuple)

    def transform_for(self, input_index) -> Optional[TransformStep]:
        for step in self.transforms:
            if step.input_index == input_index:
                return step
        return None

    @property
    def output_paths(self) -> dict[str, str]:
        return {output.role: output.path for output in self.outputs}


def _video_output(settings, role, path, inputs, duration, *, include_audio):
    return OutputSpec(
        role=role,
        path=str(path),
        inputs=tuple(inputs),
        duration=duration,
        include_video=True,
        include_audio=include_audio,
        container="mp4",
        video_codec=settings.video_codec,
        preset=settings.preset,
        crf=settings.crf,
        profile=settings.profile,
        pix_fmt=settings.pix_fmt,
        audio_codec="aac",
        audio_bitrate=settings.audio_bitrate,
    )


def plan_composition(
    job,
    local_inputs: Mapping[str, str],
    output_paths: Mapping[str, str],
    settings: CompositionSettings,
    source_sizes: Optional[Mapping[str, tuple[int, int]]] = None,
) -> CompositionPlan:
    """Build the plan for ``job.mode``.

    ``local_inputs`` maps source role to a segment that was already cut to the
    job's window, so every input is trimmed from 0 for ``job.duration``.
    """
    mode = job.mode
    duration = float(job.duration)
    if duration <= 0:
        raise ValueError("job duration must be positive")
    if mode not in SOURCE_ROLES:
        raise ValueError(f"unknown job mode: {mode}")
    sizes = dict(source_sizes or {})
    roles = SOURCE_ROLES[mode]
    missing = [role for role in roles if role not in local_inputs]
    if missing:
        raise ValueError(f"missing local inputs for roles: {', '.join(missing)}")
    expected_outputs = [role for role, _suffix in OUTPUT_ROLES[mode]]
    missing_outputs = [role for role in expected_outputs if role not in output_paths]
    if missing_outputs:
        raise ValueError(f"missing output paths for roles: {', '.join(missing_outputs)}")

    trim = TrimWindow(start=0.0, duration=duration)
    inputs = tuple(PlanInput(path=str(local_inputs[role]), role=role, trim=trim) for role in roles)

    if mode == MODE_AUDIO:
        output = OutputSpec(
            role="audio",
            path=str(output_paths["audio"]),
            inputs=(0,),
            duration=duration,
            include_video=False,
            include_audio=True,
            container="mp3",
            audio_codec="libmp3lame",
            audio_bitrate=None,
            audio_quality=2,
        )
        return CompositionPlan(inputs=inputs, transforms=(), combine=CombineStep(LAYOUT_NONE, 0), outputs=(output,))

    if mode == MODE_COMBINED:
        half_height = settings.height // 2
        transforms = tuple(
            TransformStep(
                input_index=index,
                width=settings.width,
                height=half_height,
                fit=FIT_COVER,
                fps=settings.fps,
                source_size=sizes.get(role),
            )
            for index, role in enumerate(roles)
        )
        output = _video_output(
            settings, "combined", output_paths["combined"], (0, 1), duration, include_audio=True
        )
        return CompositionPlan(
            inputs=inputs,
            transforms=transforms,
            combine=CombineStep(LAYOUT_VSTACK, audio_from=0),
            outputs=(output,),
        )

    # separate: each half re-encoded on its own; main gets extra zoom and keeps audio
    half_height = settings.height // 2
    transforms = (
        TransformStep(
            input_index=0,
            width=settings.width,
            height=half_height,
            fit=FIT_COVER,
            zoom=settings.main_zoom,
            fps=settings.fps,
            source_size=sizes.get(ROLE_MAIN),
        ),
        TransformStep(
            input_index=1,
            width=settings.width,
            height=half_height,
            fit=FIT_COVER,
            fps=settings.fps,
            source_size=sizes.get(ROLE_BACKGROUND),
        ),
    )
    outputs = (
        _video_output(settings, "main_rendered", output_paths["main_rendered"], (0,), duration, include_audio=True),
        _video_output(
            settings,
            "background_rendered",
            output_paths["background_rendered"],
            (1,),
            duration,
            include_audio=False,
        ),
    )
    return CompositionPlan(
        inputs=inputs,
        transforms=transforms,
        combine=CombineStep(LAYOUT_NONE, audio_from=0),
        outputs=outputs,
    )

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from typing import Any, Optional

from app.models.domain import GenerationKind
from app.workflows.graph import (
    AnimateDiffApplyModel,
    AnimateDiffEmptyLatent,
    AnimateDiffEvolvedSampling,
    AnimateDiffLoadModel,
    CheckpointLoader,
    CLIPLoader,
    CLIPVisionEncode,
    CLIPVisionLoader,
    EmptyLatentImage,
    HunyuanImageToVideo,
    HunyuanImageToVideoTextEncode,
    HunyuanModelLoader,
    HunyuanVAELoader,
    KSampler,
    LoadImage,
    Output,
    RepeatLatentBatch,
    SaveImage,
    TextEncode,
    VAEDecode,
    VAEEncode,
    VideoCombine,
    WorkflowError,
    WorkflowGraph,
)

MAX_SEED = 4294967295
ANIMATEDIFF_MAX_FRAMES = 32
HUNYUAN_NEGATIVE_PROMPT = (
    "low quality, blurry, distorted, artifacts, pixelated, poor lighting, overexposed, underexposed"
)

CAMERA_MOTIONS = {
    "zoom_in": "zoom in:1.3",
    "slow push-in": "slow push in:1.3",
    "zoom_out": "zoom out:1.3",
    "pan_left": "pan left:1.3",
    "pan_right": "pan right:1.3",
    "dynamic steadicam reveal": "steadicam reveal:1.4",
    "static": "static camera:1.2",
}


@dataclass(frozen=True)
class QualityDefaults:
    width: int
    height: int
    fps: int
    steps: int
    cfg: float
    max_frames: int
    denoise: float


DRAFT_DEFAULTS = QualityDefaults(width=768, height=512, fps=16, steps=25, cfg=7.5, max_frames=ANIMATEDIFF_MAX_FRAMES, denoise=0.85)
HIGH_DEFAULTS = QualityDefaults(width=720, height=1280, fps=24, steps=25, cfg=6.5, max_frames=73, denoise=1.0)


@dataclass
class ImageWorkflowParams:
    prompt: str
    negative_prompt: str
    width: int = 1024
    height: int = 576
    steps: int = 8
    cfg: float = 2.0
    seed: Optional[int] = None
    init_image: Optional[str] = None
    denoising_strength: float = 0.45
    checkpoint: str = "realvisxlV40.safetensors"


@dataclass
class VideoWorkflowParams:
    prompt: str
    negative_prompt: str
    width: int
    height: int
    fps: int
    steps: int
    cfg: float
    frame_count: int
    duration: float
    denoise: float
    seed: int = -1
    init_image: Optional[str] = None
    camera_motion: Optional[str] = "static"
    use_vhs: bool = True
    checkpoint: str = "realisticVisionV51_v51VAE.safetensors"
    motion_model: str = "mm_sd_v15_v2.ckpt"


@dataclass
class BuiltWorkflow:
    kind: GenerationKind
    graph: WorkflowGraph
    output_stage: str
    frames_stage: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_prompt(self) -> dict[str, Any]:
        return self.graph.to_prompt()


def resolve_seed(seed: Optional[int]) -> int:
    if seed is None or seed < 0:
        return random.randrange(0, MAX_SEED)
    return seed


def enhance_prompt_with_motion(prompt: str, camera_motion: Optional[str]) -> str:
    motion = (camera_motion or "").strip()
    known = CAMERA_MOTIONS.get(motion.lower())
    if motion and known is None:
        # Free text is a subject action: it leads the prompt with a stronger weight.
        action = motion if len(motion) <= 40 else motion[:37] + "..."
        return f"{action}:1.5, {prompt}, {CAMERA_MOTIONS['static']}"
    return f"{prompt}, {known or CAMERA_MOTIONS['static']}"


def plan_video_params(
    quality: str,
    prompt: str,
    negative_prompt: str,
    *,
    duration: Optional[float] = None,
    width: Optional[int] = None,
    height: Optional[int] = None,
    fps: Optional[int] = None,
    steps: Optional[int] = None,
    cfg: Optional[float] = None,
    seed: int = -1,
    denoise: Optional[float] = None,
    camera_motion: Optional[str] = "static",
    init_image: Optional[str] = None,
) -> VideoWorkflowParams:
    """Fill per-quality defaults and fit the frame count to the model's limits."""
    if quality not in ("draft", "high"):
        raise WorkflowError(f"unknown quality {quality!r}")
    defaults = HIGH_DEFAULTS if quality == "high" else DRAFT_DEFAULTS
    clip_duration = max(0.5, duration or 3.0)
    video_fps = fps or defaults.fps
    frame_count = math.ceil(clip_duration * video_fps)
    if frame_count > defaults.max_frames:
        if quality == "draft":
            capped_fps = max(1, math.floor(defaults.max_frames / clip_duration))
            if capped_fps < video_fps:
                video_fps = capped_fps
                frame_count = min(defaults.max_frames, math.ceil(clip_duration * video_fps))
            else:
                frame_count = defaults.max_frames
        else:
            frame_count = defaults.max_frames
    return VideoWorkflowParams(
        prompt=prompt,
        negative_prompt=negative_prompt,
        width=width or defaults.width,
        height=height or defaults.height,
        fps=video_fps,
        steps=steps or defaults.steps,
        cfg=cfg or defaults.cfg,
        frame_count=frame_count,
        duration=clip_duration,
        denoise=denoise or defaults.denoise,
        seed=seed,
        init_image=init_image,
        camera_motion=camera_motion,
    )


def build_image_workflow(params: ImageWorkflowParams) -> BuiltWorkflow:
    """txt2img, or img2img when ``init_image`` names a staged reference image."""
    graph = WorkflowGraph()
    checkpoint = graph.add(CheckpointLoader(ckpt_name=params.checkpoint))
    positive = graph.add(TextEncode(text=params.prompt, clip=checkpoint[1]))
    negative = graph.add(TextEncode(text=params.negative_prompt, clip=checkpoint[1]))
    if params.init_image:
        source = graph.add(LoadImage(image=params.init_image))
        latent = graph.add(VAEEncode(pixels=source[0], vae=checkpoint[2]))
        denoise = params.denoising_strength
    else:
        latent = graph.add(EmptyLatentImage(width=params.width, height=params.height, batch_size=1))
        denoise = 1.0
    sampler = graph.add(
        KSampler(
            seed=resolve_seed(params.seed),
            steps=params.steps,
            cfg=params.cfg,
            sampler_name="dpmpp_2m",
            scheduler="karras",
            denoise=denoise,
            model=checkpoint[0],
            positive=positive[0],
            negative=negative[0],
            latent_image=latent[0],
        )
    )
    decoded = graph.add(VAEDecode(samples=sampler[0], vae=checkpoint[2]))
    save = graph.add(SaveImage(filename_prefix="comfyui", images=decoded[0]))
    return BuiltWorkflow(
        kind=GenerationKind.IMAGE,
        graph=graph,
        output_stage=save.stage_id,
        metadata={
            "mode": "img2img" if params.init_image else "txt2img",
            "width": params.width,
            "height": params.height,
        },
    )


def build_draft_video_workflow(params: VideoWorkflowParams) -> BuiltWorkflow:
    """AnimateDiff fast path: SD1.5 checkpoint with a motion module."""
    graph = WorkflowGraph()
    checkpoint = graph.add(CheckpointLoader(ckpt_name=params.checkpoint))
    positive = graph.add(
        TextEncode(text=enhance_prompt_with_motion(params.prompt, params.camera_motion), clip=checkpoint[1])
    )
    negative = graph.add(TextEncode(text=params.negative_prompt, clip=checkpoint[1]))
    if params.init_image:
        source = graph.add(LoadImage(image=params.init_image))
        encoded = graph.add(VAEEncode(pixels=source[0], vae=checkpoint[2]))
        latent = graph.add(RepeatLatentBatch(samples=encoded[0], amount=params.frame_count))
    else:
        latent = graph.add(
            AnimateDiffEmptyLatent(width=params.width, height=params.height, batch_size=params.frame_count)
        )
    motion = graph.add(AnimateDiffLoadModel(model_name=params.motion_model))
    applied = graph.add(AnimateDiffApplyModel(motion_model=motion[0]))
    model = graph.add(AnimateDiffEvolvedSampling(model=checkpoint[0], m_models=applied[0]))
    sampler = graph.add(
        KSampler(
            seed=resolve_seed(params.seed),
            steps=params.steps,
            cfg=params.cfg,
            sampler_name="euler",
            scheduler="normal",
            denoise=params.denoise,
            model=model[0],
            positive=positive[0],
            negative=negative[0],
            latent_image=latent[0],
        )
    )
    decoded = graph.add(VAEDecode(samples=sampler[0], vae=checkpoint[2]))
    return _attach_video_outputs(GenerationKind.VIDEO_DRAFT, graph, decoded[0], params, "animatediff")


def build_high_video_workflow(params: VideoWorkflowParams) -> BuiltWorkflow:
    """HunyuanVideo image-to-video slow path."""
    if not params.init_image:
        raise WorkflowError("high quality video requires a reference image")
    graph = WorkflowGraph()
    model = graph.add(HunyuanModelLoader())
    vae = graph.add(HunyuanVAELoader())
    source = graph.add(LoadImage(image=params.init_image))
    vision = graph.add(CLIPVisionLoader(clip_name="clip-vit-large-patch14"))
    vision_encoded = graph.add(CLIPVisionEncode(clip_vision=vision[0], image=source[0]))
    clip = graph.add(CLIPLoader(clip_name="clip-vit-large-patch14"))
    positive = graph.add(
        HunyuanImageToVideoTextEncode(
            clip=clip[0],
            clip_vision_output=vision_encoded[0],
            prompt=enhance_prompt_with_motion(params.prompt, params.camera_motion),
        )
    )
    negative = graph.add(
        HunyuanImageToVideoTextEncode(
            clip=clip[0],
            clip_vision_output=vision_encoded[0],
            prompt=params.negative_prompt or HUNYUAN_NEGATIVE_PROMPT,
        )
    )
    conditioned = graph.add(
        HunyuanImageToVideo(
            positive=positive[0],
            vae=vae[0],
            width=params.width,
            height=params.height,
            length=params.frame_count,
            start_image=source[0],
        )
    )
    sampler = graph.add(
        KSampler(
            seed=resolve_seed(params.seed),
            steps=params.steps,
            cfg=params.cfg,
            sampler_name="euler",
            scheduler="simple",
            denoise=params.denoise,
            model=model[0],
            positive=conditioned[0],
            negative=negative[0],
            latent_image=conditioned[1],
        )
    )
    decoded = graph.add(VAEDecode(samples=sampler[0], vae=vae[0]))
    return _attach_video_outputs(GenerationKind.VIDEO_HIGH, graph, decoded[0], params, "hunyuan_video")


def build_video_workflow(quality: str, params: VideoWorkflowParams) -> BuiltWorkflow:
    if quality == "high":
        return build_high_video_workflow(params)
    if quality == "draft":
        return build_draft_video_workflow(params)
    raise WorkflowError(f"unknown quality {quality!r}")


def _attach_video_outputs(
    kind: GenerationKind,
    graph: WorkflowGraph,
    decoded: Output,
    params: VideoWorkflowParams,
    prefix: str,
) -> BuiltWorkflow:
    video_stage = None
    if params.use_vhs:
        video_stage = graph.add(
            VideoCombine(filename_prefix=prefix, images=decoded, frame_rate=params.fps)
        ).stage_id
    frames_stage = graph.add(SaveImage(filename_prefix=f"{prefix}_frames", images=decoded)).stage_id
    return BuiltWorkflow(
        kind=kind,
        graph=graph,
        output_stage=video_stage or frames_stage,
        frames_stage=frames_stage,
        metadata={
            "width": params.width,
            "height": params.height,
            "fps": params.fps,
            "frame_count": params.frame_count,
            "duration": params.duration,
        },
    )

"""Typed workflow graphs for the generation backend.

A workflow is a mapping of stage id to ``{"class_type": ..., "inputs": {...}}``
where an input either carries a literal value or references another stage's
output as ``[stage_id, slot]``. Stages here are dataclasses; references are
:class:`Output` values, validated before the graph is serialized.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, ClassVar, Dict, Iterator, Optional


class WorkflowError(Exception):
    """Raised when a workflow graph cannot be built or fails validation."""


@dataclass(frozen=True)
class Output:
    stage_id: str
    slot: int = 0

    def to_json(self) -> list[Any]:
        return [self.stage_id, self.slot]


@dataclass(frozen=True)
class StageRef:
    stage_id: str

    def __getitem__(self, slot: int) -> Output:
        return Output(self.stage_id, slot)


@dataclass
class Stage:
    class_type: ClassVar[str] = ""

    def inputs(self) -> Dict[str, Any]:
        return {field.name: getattr(self, field.name) for field in fields(self)}

    def references(self) -> Iterator[Output]:
        for value in self.inputs().values():
            if isinstance(value, Output):
                yield value

    def serialize(self) -> Dict[str, Any]:
        inputs = {
            name: value.to_json() if isinstance(value, Output) else value
            for name, value in self.inputs().items()
        }
        return {"class_type": self.class_type, "inputs": inputs}


# Image diffusion stages


@dataclass
class CheckpointLoader(Stage):
    class_type: ClassVar[str] = "CheckpointLoaderSimple"
    ckpt_name: str


@dataclass
class TextEncode(Stage):
    class_type: ClassVar[str] = "CLIPTextEncode"
    text: str
    clip: Output


@dataclass
class EmptyLatentImage(Stage):
    class_type: ClassVar[str] = "EmptyLatentImage"
    width: int
    height: int
    batch_size: int = 1


@dataclass
class LoadImage(Stage):
    class_type: ClassVar[str] = "LoadImage"
    image: str
    upload: str = "image"


@dataclass
class VAEEncode(Stage):
    class_type: ClassVar[str] = "VAEEncode"
    pixels: Output
    vae: Output


@dataclass
class VAEDecode(Stage):
    class_type: ClassVar[str] = "VAEDecode"
    samples: Output
    vae: Output


@dataclass
class KSampler(Stage):
    class_type: ClassVar[str] = "KSampler"
    seed: int
    steps: int
    cfg: float
    sampler_name: str
    scheduler: str
    denoise: float
    model: Output
    positive: Output
    negative: Output
    latent_image: Output


@dataclass
class SaveImage(Stage):
    class_type: ClassVar[str] = "SaveImage"
    filename_prefix: str
    images: Output


@dataclass
class RepeatLatentBatch(Stage):
    class_type: ClassVar[str] = "RepeatLatentBatch"
    samples: Output
    amount: int


# AnimateDiff stages


@dataclass
class AnimateDiffEmptyLatent(Stage):
    class_type: ClassVar[str] = "ADE_EmptyLatentImageLarge"
    width: int
    height: int
    batch_size: int


@dataclass
class AnimateDiffLoadModel(Stage):
    class_type: ClassVar[str] = "ADE_LoadAnimateDiffModel"
    model_name: str


@dataclass
class AnimateDiffApplyModel(Stage):
    class_type: ClassVar[str] = "ADE_ApplyAnimateDiffModelSimple"
    motion_model: Output


@dataclass
class AnimateDiffEvolvedSampling(Stage):
    class_type: ClassVar[str] = "ADE_UseEvolvedSampling"
    model: Output
    m_models: Output
    beta_schedule: str = "autoselect"


# HunyuanVideo stages


@dataclass
class HunyuanModelLoader(Stage):
    class_type: ClassVar[str] = "HyVideoModelLoader"
    model: str = "hunyuan_video_720_fp8_e4m3fn.safetensors"
    base_precision: str = "bf16"
    quantization: str = "fp8_e4m3fn_fast"
    load_device: str = "main_device"
    attention_mode: str = "sdpa"


@dataclass
class HunyuanVAELoader(Stage):
    class_type: ClassVar[str] = "HyVideoVAELoader"
    model_name: str = "hunyuan_video_vae_fp16.safetensors"
    precision: str = "bf16"


@dataclass
class CLIPVisionLoader(Stage):
    class_type: ClassVar[str] = "CLIPVisionLoader"
    clip_name: str


@dataclass
class CLIPVisionEncode(Stage):
    class_type: ClassVar[str] = "CLIPVisionEncode"
    clip_vision: Output
    image: Output


@dataclass
class CLIPLoader(Stage):
    class_type: ClassVar[str] = "CLIPLoader"
    clip_name: str


@dataclass
class HunyuanImageToVideoTextEncode(Stage):
    class_type: ClassVar[str] = "TextEncodeHunyuanVideo_ImageToVideo"
    clip: Output
    clip_vision_output: Output
    prompt: str
    image_interleave: int = 2


@dataclass
class HunyuanImageToVideo(Stage):
    class_type: ClassVar[str] = "HunyuanImageToVideo"
    positive: Output
    vae: Output
    width: int
    height: int
    length: int
    start_image: Output
    batch_size: int = 1
    guidance_type: str = "v2 (replace)"


# Output stages


@dataclass
class VideoCombine(Stage):
    class_type: ClassVar[str] = "VHS_VideoCombine"
    filename_prefix: str
    images: Output
    frame_rate: int
    loop_count: int = 0
    pingpong: bool = False
    save_output: bool = True
    format: str = "video/h264-mp4"


class WorkflowGraph:
    def __init__(self) -> None:
        self._stages: Dict[str, Stage] = {}
        self._next_id = 1

    def add(self, stage: Stage, stage_id: Optional[str] = None) -> StageRef:
        if stage_id is None:
            while str(self._next_id) in self._stages:
                self._next_id += 1
            stage_id = str(self._next_id)
            self._next_id += 1
        if stage_id in self._stages:
            raise WorkflowError(f"duplicate stage id {stage_id}")
        self._stages[stage_id] = stage
        return StageRef(stage_id)

    def validate(self) -> None:
        for stage_id, stage in self._stages.items():
            for ref in stage.references():
                if ref.stage_id not in self._stages:
                    raise WorkflowError(
                        f"stage {stage_id} ({stage.class_type}) references missing stage {ref.stage_id}"
                    )
                if ref.stage_id == stage_id:
                    raise WorkflowError(f"stage {stage_id} ({stage.class_type}) references itself")
        self._check_acyclic()

    def _check_acyclic(self) -> None:
        visiting: set[str] = set()
        done: set[str] = set()

        def visit(stage_id: str) -> None:
            if stage_id in done:
                return
            if stage_id in visiting:
                raise WorkflowError(f"workflow contains a cycle through stage {stage_id}")
            visiting.add(stage_id)
            for ref in self._stages[stage_id].references():
                visit(ref.stage_id)
            visiting.discard(stage_id)
            done.add(stage_id)

        for stage_id in self._stages:
            visit(stage_id)

    def to_prompt(self) -> Dict[str, Dict[str, Any]]:
        self.validate()
        return {stage_id: stage.serialize() for stage_id, stage in self._stages.items()}

"""Render pipeline graph builder.

Turns a ``GenerationParameters`` snapshot into the render backend's
API-format node graph::

    {"<node id>": {"class_type": "KSampler", "inputs": {"seed": 7, "model": ["4", 0]}}}

Input values are either literals or ``[node_id, output_slot]`` references to
another node. The graph is assembled from ordered stages:

    base -> upscale -> detail -> post -> output

Each stage consumes the most recent image. A stage whose prerequisite is
missing (feature disabled, model not configured, no input image) is skipped
and the graph degrades to the latest image produced so far.

The builder is pure: no I/O, no randomness. The seed is part of the
parameters snapshot.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from umrgen.models.job import GenerationParameters

BASE_STEPS = 8
BASE_CFG = 1.5
UPSCALE_DENOISE = 0.35
DETAIL_DENOISE = 0.4
DEFAULT_LORA_STRENGTH = 0.8
DEFAULT_UPSCALE_FACTOR = 1.5
OUTPUT_PREFIX = "umrgen"


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class NodeOutput:
    """Reference to one output slot of a graph node."""

    node_id: str
    slot: int = 0

    def ref(self) -> list:
        return [self.node_id, self.slot]


@dataclass(frozen=True)
class RenderModels:
    """Model file names available on the render backend."""

    unet_name: Optional[str]
    clip_name: Optional[str]
    clip_type: str = "lumina2"
    vae_name: Optional[str] = None
    idle_lora_name: Optional[str] = None
    detector_model: Optional[str] = None
    sampler_name: str = "euler"
    scheduler_name: str = "simple"

    @classmethod
    def from_settings(cls, settings) -> "RenderModels":
        return cls(
            unet_name=settings.base_unet_name or None,
            clip_name=settings.base_clip_name or None,
            clip_type=settings.base_clip_type,
            vae_name=settings.base_vae_name or None,
            idle_lora_name=settings.idle_lora_name or None,
            detector_model=settings.detail_detector_model or None,
            sampler_name=settings.sampler_name,
            scheduler_name=settings.scheduler_name,
        )


class GraphBuilder:
    """Accumulates nodes with sequential string ids."""

    def __init__(self):
        self.nodes: dict[str, dict[str, Any]] = {}

    def add(self, class_type: str, **inputs: Any) -> str:
        node_id = str(len(self.nodes) + 1)
        self.nodes[node_id] = {
            "class_type": class_type,
            "inputs": {
                name: value.ref() if isinstance(value, NodeOutput) else value
                for name, value in inputs.items()
            },
        }
        return node_id


@dataclass(frozen=True)
class BaseStage:
    steps: int
    cfg: float
    seed: int
    width: int
    height: int
    lora_name: Optional[str]
    lora_strength: float
    model: Optional[NodeOutput] = None
    clip: Optional[NodeOutput] = None
    vae: Optional[NodeOutput] = None
    positive: Optional[NodeOutput] = None
    negative: Optional[NodeOutput] = None
    image: Optional[NodeOutput] = None


@dataclass(frozen=True)
class UpscaleStage:
    factor: float
    denoise: float
    seed: int
    image: NodeOutput


@dataclass(frozen=True)
class DetailStage:
    detector_model: str
    denoise: float
    seed: int
    image: NodeOutput


@dataclass(frozen=True)
class PostStage:
    adjustments: dict[str, float]
    image: NodeOutput


@dataclass(frozen=True)
class OutputStage:
    filename_prefix: str
    image: NodeOutput


@dataclass
class RenderPlan:
    """Typed view of the stages that made it into the graph."""

    base: BaseStage
    upscale: Optional[UpscaleStage] = None
    detail: Optional[DetailStage] = None
    post: Optional[PostStage] = None
    output: Optional[OutputStage] = None
    graph: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def final_image(self) -> Optional[NodeOutput]:
        for stage in (self.post, self.detail, self.upscale, self.base):
            if stage is not None and stage.image is not None:
                return stage.image
        return None


def _base_stage(
    graph: GraphBuilder,
    params: GenerationParameters,
    models: RenderModels,
    lora_name: Optional[str],
) -> BaseStage:
    if lora_name:
        strength = params.lora_strength
        strength = _clamp(DEFAULT_LORA_STRENGTH if strength is None else strength, 0.0, 2.0)
        active_lora = lora_name
    else:
        # Idle LoRA keeps the graph topology constant
        strength = 0.0
        active_lora = models.idle_lora_name

    stage = BaseStage(
        steps=int(_clamp(BASE_STEPS, 1, 50)),
        cfg=_clamp(BASE_CFG, 0.0, 20.0),
        seed=params.seed,
        width=params.width,
        height=params.height,
        lora_name=active_lora,
        lora_strength=strength,
    )
    if not (models.unet_name and models.clip_name and models.vae_name):
        return stage

    unet = graph.add("UNETLoader", unet_name=models.unet_name, weight_dtype="default")
    clip = graph.add("CLIPLoader", clip_name=models.clip_name, type=models.clip_type)
    vae = graph.add("VAELoader", vae_name=models.vae_name)
    lora = graph.add(
        "LoraLoader",
        model=NodeOutput(unet, 0),
        clip=NodeOutput(clip, 0),
        lora_name=active_lora or "",
        strength_model=strength,
        strength_clip=strength,
    )
    positive = graph.add("CLIPTextEncode", text=params.prompt, clip=NodeOutput(lora, 1))
    negative = graph.add("CLIPTextEncode", text=params.negative_prompt, clip=NodeOutput(lora, 1))
    latent = graph.add(
        "EmptyLatentImage", width=params.width, height=params.height, batch_size=1
    )
    sampler = graph.add(
        "KSampler",
        model=NodeOutput(lora, 0),
        positive=NodeOutput(positive, 0),
        negative=NodeOutput(negative, 0),
        latent_image=NodeOutput(latent, 0),
        seed=stage.seed,
        steps=stage.steps,
        cfg=stage.cfg,
        sampler_name=models.sampler_name,
        scheduler=models.scheduler_name,
        denoise=1.0,
    )
    decode = graph.add("VAEDecode", samples=NodeOutput(sampler, 0), vae=NodeOutput(vae, 0))

    return BaseStage(
        steps=stage.steps,
        cfg=stage.cfg,
        seed=stage.seed,
        width=stage.width,
        height=stage.height,
        lora_name=stage.lora_name,
        lora_strength=stage.lora_strength,
        model=NodeOutput(lora, 0),
        clip=NodeOutput(lora, 1),
        vae=NodeOutput(vae, 0),
        positive=NodeOutput(positive, 0),
        negative=NodeOutput(negative, 0),
        image=NodeOutput(decode, 0),
    )


def _upscale_stage(
    graph: GraphBuilder,
    params: GenerationParameters,
    models: RenderModels,
    base: BaseStage,
    image: Optional[NodeOutput],
) -> Optional[UpscaleStage]:
    if image is None or base.model is None or not params.upscale:
        return None

    factor = params.upscale_factor
    factor = _clamp(DEFAULT_UPSCALE_FACTOR if factor is None else factor, 1.0, 4.0)
    if factor <= 1.0:
        return None

    denoise = _clamp(UPSCALE_DENOISE, 0.0, 1.0)
    seed = params.seed + 1

    scaled = graph.add("ImageScaleBy", image=image, upscale_method="lanczos", scale_by=factor)
    encoded = graph.add("VAEEncode", pixels=NodeOutput(scaled, 0), vae=base.vae)
    sampler = graph.add(
        "KSampler",
        model=base.model,
        positive=base.positive,
        negative=base.negative,
        latent_image=NodeOutput(encoded, 0),
        seed=seed,
        steps=base.steps,
        cfg=base.cfg,
        sampler_name=models.sampler_name,
        scheduler=models.scheduler_name,
        denoise=denoise,
    )
    decode = graph.add("VAEDecode", samples=NodeOutput(sampler, 0), vae=base.vae)

    return UpscaleStage(factor=factor, denoise=denoise, seed=seed, image=NodeOutput(decode, 0))


def _detail_stage(
    graph: GraphBuilder,
    params: GenerationParameters,
    models: RenderModels,
    base: BaseStage,
    image: Optional[NodeOutput],
) -> Optional[DetailStage]:
    if image is None or base.model is None or not params.detail or not models.detector_model:
        return None

    denoise = _clamp(DETAIL_DENOISE, 0.0, 1.0)
    seed = params.seed + 2

    detector = graph.add("UltralyticsDetectorProvider", model_name=models.detector_model)
    detailer = graph.add(
        "FaceDetailer",
        image=image,
        model=base.model,
        clip=base.clip,
        vae=base.vae,
        positive=base.positive,
        negative=base.negative,
        bbox_detector=NodeOutput(detector, 0),
        seed=seed,
        steps=base.steps,
        cfg=base.cfg,
        sampler_name=models.sampler_name,
        scheduler=models.scheduler_name,
        denoise=denoise,
        guide_size=512,
        guide_size_for=True,
        max_size=1024,
        feather=5,
        noise_mask=True,
        force_inpaint=True,
        bbox_threshold=0.5,
        bbox_dilation=10,
        bbox_crop_factor=3.0,
        drop_size=10,
        cycle=1,
        wildcard="",
    )

    return DetailStage(
        detector_model=models.detector_model,
        denoise=denoise,
        seed=seed,
        image=NodeOutput(detailer, 0),
    )


def _post_stage(
    graph: GraphBuilder, params: GenerationParameters, image: Optional[NodeOutput]
) -> Optional[PostStage]:
    if image is None:
        return None

    post = params.post
    adjustments: dict[str, float] = {}
    current = image

    if post.color_adjusted:
        node = graph.add(
            "ColorAdjust",
            image=current,
            exposure=post.exposure,
            contrast=post.contrast,
            saturation=post.saturation,
            vibrance=post.vibrance,
        )
        current = NodeOutput(node, 0)
        adjustments.update(
            exposure=post.exposure,
            contrast=post.contrast,
            saturation=post.saturation,
            vibrance=post.vibrance,
        )

    if post.sharpen:
        node = graph.add(
            "ImageSharpen", image=current, sharpen_radius=1, sigma=1.0, alpha=post.sharpen
        )
        current = NodeOutput(node, 0)
        adjustments["sharpen"] = post.sharpen

    if post.vignette:
        node = graph.add("Vignette", image=current, intensity=post.vignette)
        current = NodeOutput(node, 0)
        adjustments["vignette"] = post.vignette

    if post.grain:
        node = graph.add("FilmGrain", image=current, intensity=post.grain)
        current = NodeOutput(node, 0)
        adjustments["grain"] = post.grain

    if not adjustments:
        return None
    return PostStage(adjustments=adjustments, image=current)


def plan_render(
    params: GenerationParameters,
    models: RenderModels,
    lora_name: Optional[str] = None,
    job_id: Optional[str] = None,
) -> RenderPlan:
    """Build the typed render plan (and its graph) for one job.

    Args:
        params: Concrete generation parameters (seed already chosen)
        models: Model names configured on the backend
        lora_name: Transient mount name of the job's custom LoRA, if any
        job_id: Used in the output filename prefix

    Returns:
        RenderPlan whose ``graph`` is ready for submission
    """
    graph = GraphBuilder()

    base = _base_stage(graph, params, models, lora_name)
    plan = RenderPlan(base=base)
    image = base.image

    plan.upscale = _upscale_stage(graph, params, models, base, image)
    if plan.upscale is not None:
        image = plan.upscale.image

    plan.detail = _detail_stage(graph, params, models, base, image)
    if plan.detail is not None:
        image = plan.detail.image

    plan.post = _post_stage(graph, params, image)
    if plan.post is not None:
        image = plan.post.image

    if image is not None:
        prefix = f"{OUTPUT_PREFIX}/{job_id}" if job_id else OUTPUT_PREFIX
        graph.add("SaveImage", filename_prefix=prefix, images=image)
        plan.output = OutputStage(filename_prefix=prefix, image=image)

    plan.graph = graph.nodes
    return plan


def build_graph(
    params: GenerationParameters,
    models: RenderModels,
    lora_name: Optional[str] = None,
    job_id: Optional[str] = None,
) -> dict[str, dict[str, Any]]:
    """Return the API-format graph for ``params``. See ``plan_render``."""
    return plan_render(params, models, lora_name=lora_name, job_id=job_id).graph

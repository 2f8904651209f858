"""Static model catalog: model name -> modality and shape parameters."""

from __future__ import annotations

from app.gateway.types import Modality, ModelSpec, Orientation

_IMAGE_MODELS = [
    ModelSpec("sora-image", Modality.IMAGE, width=360, height=360),
    ModelSpec("sora-image-landscape", Modality.IMAGE, width=540, height=360),
    ModelSpec("sora-image-portrait", Modality.IMAGE, width=360, height=540),
]

_VIDEO_MODELS = [
    ModelSpec("sora-video-10s", Modality.VIDEO, orientation=Orientation.LANDSCAPE, n_frames=300),
    ModelSpec("sora-video-15s", Modality.VIDEO, orientation=Orientation.LANDSCAPE, n_frames=450),
    ModelSpec("sora-video-landscape-10s", Modality.VIDEO, orientation=Orientation.LANDSCAPE, n_frames=300),
    ModelSpec("sora-video-landscape-15s", Modality.VIDEO, orientation=Orientation.LANDSCAPE, n_frames=450),
    ModelSpec("sora-video-portrait-10s", Modality.VIDEO, orientation=Orientation.PORTRAIT, n_frames=300),
    ModelSpec("sora-video-portrait-15s", Modality.VIDEO, orientation=Orientation.PORTRAIT, n_frames=450),
]

MODEL_CATALOG: dict[str, ModelSpec] = {spec.name: spec for spec in (*_IMAGE_MODELS, *_VIDEO_MODELS)}


def resolve_model(name: str) -> ModelSpec | None:
    """Look up a model by name. Returns None for unknown models."""
    return MODEL_CATALOG.get(name)


def list_models() -> list[str]:
    return list(MODEL_CATALOG)

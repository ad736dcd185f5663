"""
Model loading utilities for the matting segmenter.

The loader:
 - loads a TorchScript matting checkpoint from `SEGMENTER_MODEL_PATH`,
 - keeps a single shared instance on the best available device,
 - exposes `get_segmentation_model()` for inference callers.
"""

from __future__ import annotations

import logging
from pathlib import Path
from threading import Lock
from typing import Optional, Tuple

import torch

from . import config

logger = logging.getLogger(__name__)

_MODEL = None
# Prefer CUDA -> Apple MPS -> CPU to support both GPU servers and local macOS dev.
if torch.cuda.is_available():
    _DEVICE = torch.device("cuda")
elif torch.backends.mps.is_available():  # type: ignore[attr-defined]
    _DEVICE = torch.device("mps")
else:
    _DEVICE = torch.device("cpu")
_LOCK = Lock()


def _load_torchscript(model_path: Path) -> torch.nn.Module:
    model = torch.jit.load(str(model_path), map_location=_DEVICE)
    model.eval()
    return model


def _load_model(settings: config.Settings) -> torch.nn.Module:
    model_path: Optional[Path] = settings.segmenter_model_path
    if model_path is None:
        raise FileNotFoundError("SEGMENTER_MODEL_PATH is not configured")
    if not model_path.exists():
        raise FileNotFoundError(f"Segmenter checkpoint not found at {model_path}")
    logger.info("Loading TorchScript segmenter from %s", model_path)
    return _load_torchscript(model_path)


def get_segmentation_model() -> Tuple[torch.nn.Module, torch.device]:
    """
    Return a singleton model + device pair.

    The model is loaded once on first access and kept resident to avoid
    re-initialization costs across images.
    """
    global _MODEL
    if _MODEL is not None:
        return _MODEL, _DEVICE

    with _LOCK:
        if _MODEL is None:
            _MODEL = _load_model(config.get_settings())
            logger.info("Segmenter loaded on device: %s", _DEVICE)
    return _MODEL, _DEVICE

from __future__ import annotations

import logging
import os
import threading
from typing import Any, Optional, Protocol

import numpy as np
import torch

from .config import MODEL_INPUT_SIZE

log = logging.getLogger(__name__)


class InferenceBackend(Protocol):
    """Anything that maps a normalized (1,3,S,S) tensor to a raw output tensor."""

    input_size: int

    def run(self, x: np.ndarray) -> np.ndarray: ...

    def close(self) -> None: ...


def get_device() -> torch.device:
    if torch.backends.mps.is_available():
        return torch.device("mps")
    if torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")


def load_torchscript_model(model_path: str, device: torch.device | None = None) -> torch.nn.Module:
    """
    Load a TorchScript segmentation model for local inference.

    Implementation note:
    - This loader expects a TorchScript module saved via torch.jit.save (see get_model.py).
    - Pure state_dict checkpoints require the original model code and are not supported.
    """
    if device is None:
        device = get_device()

    if not os.path.exists(model_path):
        raise FileNotFoundError(f"Model not found: {model_path}")

    try:
        # Register torchvision custom TorchScript ops before loading.
        import torchvision  # noqa: F401

        # Load on CPU first, then cast; float64 attributes cannot move to MPS.
        model = torch.jit.load(model_path, map_location="cpu")
    except Exception as e:  # noqa: BLE001 - surface a helpful error
        raise RuntimeError(
            "Failed to load model. This pipeline expects a TorchScript segmentation model "
            "saved with torch.jit.save(). Run get_model.py to export one."
        ) from e

    model.eval()
    for p in model.parameters():
        p.requires_grad_(False)

    model = model.to(dtype=torch.float32)
    model.to(device)
    return model


def _extract_primary_output(y: Any) -> Any:
    """
    Segmentation models may return:
      - a single tensor
      - (tensor, ...) tuple/list (final stage is typically last)
      - dict with tensor fields (torchvision uses "out")
    """
    if isinstance(y, torch.Tensor):
        return y
    if isinstance(y, (list, tuple)) and len(y) > 0:
        for item in reversed(y):
            if isinstance(item, torch.Tensor):
                return item
        return y[-1]
    if isinstance(y, dict):
        for k in ("out", "logits", "pred", "alpha", "mask"):
            v = y.get(k, None)
            if isinstance(v, torch.Tensor):
                return v
        for v in y.values():
            if isinstance(v, torch.Tensor):
                return v
        return next(iter(y.values()))
    return y


class TorchScriptBackend:
    """
    Read-only inference session shared across threads.

    `close()` releases the module once, at process shutdown.
    """

    def __init__(self, model: torch.nn.Module, device: torch.device, input_size: int = MODEL_INPUT_SIZE):
        self.model: Optional[torch.nn.Module] = model
        self.device = device
        self.input_size = int(input_size)
        self._close_lock = threading.Lock()

    @classmethod
    def from_path(cls, model_path: str, device: torch.device | None = None) -> "TorchScriptBackend":
        device = device or get_device()
        model = load_torchscript_model(model_path, device=device)
        log.info("Loaded TorchScript model %s on %s", model_path, device)
        return cls(model, device)

    def run(self, x: np.ndarray) -> np.ndarray:
        model = self.model
        if model is None:
            raise RuntimeError("Inference session already closed")
        if x.ndim != 4 or x.shape[0] != 1:
            raise ValueError(f"Expected input tensor (1,3,H,W), got {tuple(x.shape)}")

        t = torch.from_numpy(np.ascontiguousarray(x, dtype=np.float32)).to(self.device)
        with torch.no_grad():
            y = _extract_primary_output(model(t))
        if not isinstance(y, torch.Tensor):
            raise RuntimeError(f"Model output is not a tensor: {type(y)}")
        return y.detach().to("cpu").float().numpy()

    def close(self) -> None:
        with self._close_lock:
            if self.model is None:
                return
            self.model = None
        if self.device.type == "cuda":
            torch.cuda.empty_cache()
        log.info("Inference session released")

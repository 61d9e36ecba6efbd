from __future__ import annotations

import argparse
from pathlib import Path

import torch
import torchvision

from photobooth_matting.config import MODEL_INPUT_SIZE


class SegmentationWrapper(torch.nn.Module):
    """Return the `out` logits tensor of a torchvision segmentation model."""

    def __init__(self, m: torch.nn.Module):
        super().__init__()
        self.m = m

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.m(x)["out"].to(dtype=torch.float32)


def export_deeplab_torchscript(*, out_path: Path, input_res: int = MODEL_INPUT_SIZE) -> None:
    """
    Export DeepLabV3-ResNet50 (21 VOC classes, person = 15) to TorchScript.

    Trace on CPU, float32, batch size 1.
    """
    torch.set_default_dtype(torch.float32)
    weights = torchvision.models.segmentation.DeepLabV3_ResNet50_Weights.DEFAULT
    core = torchvision.models.segmentation.deeplabv3_resnet50(weights=weights, aux_loss=True)
    core.eval()
    for p in core.parameters():
        p.requires_grad_(False)

    wrapped = SegmentationWrapper(core).eval().to("cpu")
    dummy = torch.randn(1, 3, int(input_res), int(input_res), dtype=torch.float32, device="cpu")

    traced = torch.jit.trace(wrapped, dummy, strict=False)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    traced.save(str(out_path))


def main() -> int:
    parser = argparse.ArgumentParser(description="Export DeepLabV3 person segmentation to TorchScript.")
    parser.add_argument(
        "--input-res",
        default=MODEL_INPUT_SIZE,
        type=int,
        help="Square trace resolution (must match MODEL_INPUT_SIZE).",
    )
    parser.add_argument(
        "--out",
        default=str(Path(__file__).parent / "models" / "deeplabv3.torchscript"),
        help="Destination TorchScript path used by the pipeline.",
    )
    args = parser.parse_args()

    out_path = Path(args.out)
    export_deeplab_torchscript(out_path=out_path, input_res=int(args.input_res))

    _ = torch.jit.load(str(out_path), map_location="cpu")
    print(f"OK. Saved TorchScript model to: {out_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

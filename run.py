from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from tqdm import tqdm

from photobooth_matting.config import PipelineOptions
from photobooth_matting.contracts import MattingSummary
from photobooth_matting.io import load_image, safe_id_from_relpath, save_png, write_json
from photobooth_matting.pipeline import PipelineOrchestrator
from photobooth_matting.raster import RasterBuffer
from photobooth_matting.remote import RemoveBgClient
from photobooth_matting.segmentation import create_engine

log = logging.getLogger("photobooth_matting.run")


def _iter_images(input_dir: Path):
    exts = {".jpg", ".jpeg", ".png", ".webp", ".bmp", ".tif", ".tiff"}
    for p in sorted(input_dir.rglob("*")):
        if p.is_file() and p.suffix.lower() in exts:
            yield p


def main() -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Photo booth matting: cutout, matte and composite for a folder.")
    parser.add_argument("--input", required=True, type=str, help="Input directory containing images.")
    parser.add_argument("--output", required=True, type=str, help="Output directory.")
    parser.add_argument("--model", default=None, type=str, help="TorchScript model path (heuristic if omitted).")
    parser.add_argument("--background", default=None, type=str, help="Optional background image to composite onto.")
    parser.add_argument("--remote-fallback", action="store_true", help="Use remove.bg for low-confidence mattes.")
    parser.add_argument("--threshold", default=None, type=float, help="Confidence threshold for remote fallback.")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    input_dir = Path(args.input)
    output_dir = Path(args.output)
    if not input_dir.exists():
        raise FileNotFoundError(f"Input dir not found: {input_dir}")

    options = PipelineOptions.from_env()
    updates = {}
    if args.remote_fallback:
        updates["enable_remote_fallback"] = True
    if args.threshold is not None:
        updates["confidence_threshold"] = args.threshold
    if updates:
        options = options.model_copy(update=updates)

    background: Optional[RasterBuffer] = load_image(args.background) if args.background else None

    images = list(_iter_images(input_dir))
    if not images:
        log.info("No images found under %s", input_dir)
        return 0

    failures = 0
    total0 = time.perf_counter()
    with PipelineOrchestrator(create_engine(args.model), remote=RemoveBgClient(), options=options) as orchestrator:
        for img_path in tqdm(images, desc="Matting", unit="img"):
            rel = img_path.relative_to(input_dir)
            image_id = safe_id_from_relpath(rel.as_posix())

            result = orchestrator.process_final(load_image(str(img_path)), background)
            if result is None:
                continue
            if not result.ok:
                failures += 1

            if result.foreground is not None:
                save_png(result.foreground, str(output_dir / "cutout" / f"{image_id}.png"))
            save_png(result.matte, str(output_dir / "matte" / f"{image_id}.png"))
            if result.composite is not None:
                save_png(result.composite, str(output_dir / "composite" / f"{image_id}.png"))

            summary = MattingSummary.from_result(image_id, str(img_path), result)
            write_json(str(output_dir / "metadata" / f"{image_id}.json"), summary.model_dump())

            log.info(
                "%s: confidence=%.3f remote=%s total=%.3fs",
                img_path.name,
                result.confidence,
                result.used_external_fallback,
                result.timings.total_s,
            )

    total1 = time.perf_counter()
    log.info("Done. %d images in %.2fs (%d degraded)", len(images), total1 - total0, failures)
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())

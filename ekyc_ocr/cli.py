"""Command-line interface for extracting ID card fields from local images.

Runs the same preprocess, recognize and extract steps as the service, without
a verification record. Useful to check OCR quality on sample cards.
"""

import argparse
import asyncio
import csv
import json
import sys
import time
from pathlib import Path

from ekyc_ocr.exceptions import ConfigurationError, EKYCError
from ekyc_ocr.extraction.rule_extractor import ExtractedFieldSet, FieldExtractor
from ekyc_ocr.ocr.recognizer import (
    RecognitionEngine,
    get_recognizer,
    shutdown_recognizer,
)
from ekyc_ocr.preprocessing.pipeline import PreprocessingPipeline
from ekyc_ocr.utils.config import AppConfig, load_config
from ekyc_ocr.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)

_SUPPORTED_EXTENSIONS = ("*.png", "*.jpg", "*.jpeg", "*.tiff", "*.tif", "*.webp")
_FIELD_COLUMNS = ["id_number", "name", "date_of_birth", "gender", "address"]
_META_COLUMNS = ["filename", "status", "confidence", "processing_time_s", "error"]


def _find_images(input_dir: Path) -> list[Path]:
    """Find all supported image files in a directory.

    Args:
        input_dir: Directory to scan.

    Returns:
        Sorted list of image paths.
    """
    files: list[Path] = []
    for ext in _SUPPORTED_EXTENSIONS:
        files.extend(input_dir.glob(ext))
        files.extend(input_dir.glob(ext.upper()))
    return sorted(set(files))


async def extract_file(
    file_path: Path,
    config: AppConfig,
    recognizer: RecognitionEngine,
    extractor: FieldExtractor | None = None,
) -> dict[str, object]:
    """Extract fields from one local image.

    Args:
        file_path: Image to process.
        config: Application configuration.
        recognizer: Recognition engine to use.
        extractor: Field extractor; a default one is created if omitted.

    Returns:
        Dictionary with filename, fields, confidence and raw_text.

    Raises:
        EKYCError: If the image cannot be decoded or recognized.
    """
    extractor = extractor or FieldExtractor()
    preprocessor = PreprocessingPipeline(config.preprocessing)

    image = preprocessor.process(file_path.read_bytes(), name=file_path.name)
    ocr = await recognizer.recognize(image)
    fields = extractor.extract(ocr.text)

    return {
        "filename": file_path.name,
        "fields": fields.to_dict(),
        "manual_entry_required": fields.is_empty,
        "confidence": round(ocr.confidence, 3),
        "raw_text": ocr.text,
    }


async def process_folder(
    input_dir: Path,
    output_csv: Path,
    config: AppConfig,
    recognizer: RecognitionEngine,
    verbose: bool = False,
) -> dict[str, int]:
    """Extract every image in a folder concurrently and write a CSV.

    Concurrency is limited by the recognizer's pool.

    Returns:
        Summary dict with total, successful, and failed counts.
    """
    files = _find_images(input_dir)
    if not files:
        logger.warning("No images found in %s", input_dir)
        return {"total": 0, "successful": 0, "failed": 0}

    logger.info("Found %d images to process", len(files))
    extractor = FieldExtractor()

    async def one(path: Path) -> dict[str, object]:
        start_time = time.time()
        try:
            result = await extract_file(path, config, recognizer, extractor)
        except EKYCError as exc:
            logger.error("Failed to process %s: %s", path.name, exc)
            return {"filename": path.name, "status": "failed", "error": str(exc)}
        if verbose:
            print(f"Processed: {path.name}")
        row: dict[str, object] = {
            "filename": path.name,
            "status": "success",
            "confidence": result["confidence"],
            "processing_time_s": round(time.time() - start_time, 2),
            "error": None,
        }
        row.update(ExtractedFieldSet.from_dict(result["fields"]).to_dict())
        return row

    rows = await asyncio.gather(*(one(path) for path in files))
    _write_csv(list(rows), output_csv)
    logger.info("Results written to %s", output_csv)

    failed = sum(1 for r in rows if r["status"] == "failed")
    summary = {"total": len(rows), "successful": len(rows) - failed, "failed": failed}
    _print_summary(summary, output_csv)
    return summary


def _write_csv(rows: list[dict[str, object]], output_path: Path) -> None:
    """Write extraction rows to a CSV file.

    Args:
        rows: One dictionary per processed image.
        output_path: Path for the output CSV file.
    """
    if not rows:
        return

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", newline="") as f:
        writer = csv.DictWriter(
            f, fieldnames=_META_COLUMNS + _FIELD_COLUMNS, extrasaction="ignore"
        )
        writer.writeheader()
        writer.writerows(rows)


def _print_summary(summary: dict[str, int], output_csv: Path) -> None:
    print(f"\n{'=' * 50}")
    print("Batch Extraction Complete")
    print(f"{'=' * 50}")
    print(f"Total:      {summary['total']}")
    print(f"Successful: {summary['successful']}")
    print(f"Failed:     {summary['failed']}")
    print(f"Output:     {output_csv}")


async def _run(args: argparse.Namespace, config: AppConfig) -> int:
    recognizer = get_recognizer(config.ocr)
    try:
        if args.command == "batch":
            await process_folder(
                args.input_dir, args.output, config, recognizer, args.verbose
            )
            return 0

        try:
            result = await extract_file(args.file, config, recognizer)
        except EKYCError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        output_str = json.dumps(result, indent=2, ensure_ascii=False)
        if args.output:
            args.output.parent.mkdir(parents=True, exist_ok=True)
            args.output.write_text(output_str, encoding="utf-8")
            print(f"Output written to {args.output}")
        else:
            print(output_str)
        return 0
    finally:
        await shutdown_recognizer()


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate command.

    Args:
        argv: Command-line arguments (defaults to sys.argv).
    """
    parser = argparse.ArgumentParser(
        description="ID card field extraction",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-c", "--config", type=Path, help="YAML config file")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    batch_parser = subparsers.add_parser("batch", help="Process a folder of images")
    batch_parser.add_argument("input_dir", type=Path, help="Input directory")
    batch_parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=Path("results.csv"),
        help="Output CSV file (default: results.csv)",
    )
    batch_parser.add_argument(
        "-v", "--verbose", action="store_true", help="Verbose output"
    )

    single_parser = subparsers.add_parser("extract", help="Process a single image")
    single_parser.add_argument("file", type=Path, help="Image file to process")
    single_parser.add_argument("-o", "--output", type=Path, help="Output JSON file")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    setup_logging(config.log_level)

    if args.command == "batch" and not args.input_dir.is_dir():
        print(f"Error: {args.input_dir} is not a directory", file=sys.stderr)
        sys.exit(1)
    if args.command == "extract" and not args.file.exists():
        print(f"Error: {args.file} does not exist", file=sys.stderr)
        sys.exit(1)

    code = asyncio.run(_run(args, config))
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()

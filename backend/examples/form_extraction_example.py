#!/usr/bin/env python3
"""
Form Field Extraction - Example Usage
=====================================

Runs the extraction pipeline over a local file and prints the fields.

Usage:
    python examples/form_extraction_example.py path/to/form.pdf
    python examples/form_extraction_example.py path/to/page.png
    python examples/form_extraction_example.py path/to/form.html
    python examples/form_extraction_example.py path/to/tall_screenshot.png --split

Requirements:
    - LLM_API_KEY (not needed for HTML files)
    - GOOGLE_VISION_API_KEY, or AWS credentials with OCR_PROVIDER=textract
      (for PDFs and page images)
"""

import sys
import json
import asyncio
import argparse
import logging
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from formintel.config import Config
from formintel.exceptions import FormIntelError
from formintel.services.ocr_service import create_ocr_service
from formintel.services.field_extraction.pipeline import FormExtractionPipeline

# Configure logging
logging.basicConfig(
    level=Config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

HTML_SUFFIXES = ('.html', '.htm')


def print_fields(fields):
    """Print a one-line summary per field."""
    print("\n" + "=" * 60)
    print(f"EXTRACTED FIELDS ({len(fields)})")
    print("=" * 60)

    for field in fields:
        required = "*" if field.required else " "
        page = f"p{field.page_number}" if field.page_number else "  "
        if field.is_label:
            text = getattr(field, 'rich_text_content', '') or ''
            print(f"  {page} [{'label':20}]   {text[:60]}")
            continue
        print(f"  {page} [{field.type:20}] {required} {field.label}")
        options = field.options_list
        if options:
            print(f"       └─ Options: {', '.join(options[:8])}{' ...' if len(options) > 8 else ''}")


def print_errors(errors):
    if not errors:
        return
    print("\n" + "-" * 40)
    print("PARTIAL FAILURES")
    print("-" * 40)
    for error in errors:
        print(f"  {error.stage} / {error.unit}: {error.error_type}: {error.message}")


async def process_file(path: Path, split: bool, batch_size=None):
    """
    Run the pipeline path that matches the file type.

    Returns:
        Dictionary to be written as JSON output
    """
    data = path.read_bytes()
    logger.info(f"Processing: {path.name} ({len(data):,} bytes)")

    if path.suffix.lower() in HTML_SUFFIXES:
        pipeline = FormExtractionPipeline()
        fields = pipeline.classify_from_dom(data)
        print_fields(fields)
        return {'fields': [f.to_dict() for f in fields]}

    if split:
        pipeline = FormExtractionPipeline()
        output = await pipeline.split_and_classify_image(data)
        print(f"\nSections: {output.num_sections} (split: {output.was_split})")
        print_fields(output.fields)
        print_errors(output.errors)
        return output.to_dict()

    pipeline = FormExtractionPipeline(ocr_service=create_ocr_service())
    if path.suffix.lower() == '.pdf':
        output = await pipeline.analyze_pdf(data, batch_size=batch_size)
    else:
        output = await pipeline.analyze_images([data], batch_size=batch_size)

    print_fields(output.fields)
    print_errors(output.errors)

    llm = output.analytics.get('llm', {})
    batching = output.analytics.get('batching', {})
    print("\n" + "-" * 40)
    print("ANALYTICS")
    print("-" * 40)
    print(f"OCR time: {output.analytics.get('ocr', {}).get('time_ms', 0)}ms")
    print(f"LLM time: {llm.get('time_ms', 0)}ms ({llm.get('total_tokens', 0)} tokens)")
    print(f"Batches: {batching.get('batch_count', 0)} of up to {batching.get('batch_size', 0)} page(s)")
    return output.to_dict()


def main():
    parser = argparse.ArgumentParser(
        description='Form Field Extraction',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Extract fields from a PDF
    python form_extraction_example.py form.pdf

    # Save output to JSON
    python form_extraction_example.py form.pdf -o fields.json

    # Classify a tall screenshot section by section with the vision model
    python form_extraction_example.py screenshot.png --split
        """
    )

    parser.add_argument('path', help='PDF, image or HTML file to process')
    parser.add_argument('-o', '--output', help='Path to save JSON output')
    parser.add_argument('--split', action='store_true', help='Split a tall image and classify with the vision model')
    parser.add_argument('--batch-size', type=int, help='Pages per LLM batch')

    args = parser.parse_args()

    path = Path(args.path)
    if not path.exists():
        logger.error(f"File not found: {path}")
        sys.exit(1)

    try:
        result = asyncio.run(process_file(path, args.split, args.batch_size))
    except FormIntelError as e:
        logger.error(f"Extraction failed: {type(e).__name__}: {e}")
        sys.exit(1)

    if args.output:
        with open(args.output, 'w') as f:
            json.dump(result, f, indent=2)
        logger.info(f"Output saved to: {args.output}")


if __name__ == '__main__':
    main()

"""Command line interface for Tessera."""

from __future__ import annotations

import argparse
import asyncio
import logging
import pathlib
import re
import sys
from typing import Any, Dict, Iterable, Optional

from .configuration import TesseraConfig, load_settings
from .documents import detect_format, detect_handler
from .errors import (
    OverwriteRefusedError,
    TesseraError,
    TranslationProviderConfigurationError,
    UnsupportedFileTypeError,
)
from .pipeline import DocumentPipeline, PipelineSummary, validate_paths


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tessera",
        description="Translate and review XLIFF, Word and text documents segment by segment.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    inspect = subparsers.add_parser(
        "inspect", help="List the segments extracted from a document."
    )
    inspect.add_argument("input_file", help="Path to the document to inspect.")
    inspect.add_argument(
        "--format",
        dest="format_hint",
        help="Document format (xliff, memoqxliff, docx, txt). Detected from the name by default.",
    )

    translate = subparsers.add_parser("translate", help="Translate a document.")
    translate.add_argument("input_file", help="Path to the document to translate.")
    translate.add_argument(
        "-t",
        "--target-language",
        required=True,
        help="Destination language (name or ISO-639 code).",
    )
    translate.add_argument(
        "-s",
        "--source-language",
        help="Source language. Defaults to the language declared in the document.",
    )
    translate.add_argument(
        "-o",
        "--output",
        help="Output file path. Defaults to appending the target language code.",
    )
    translate.add_argument("--format", dest="format_hint", help="Document format override.")
    translate.add_argument(
        "-p",
        "--provider",
        help="Translation provider identifier (openai, azure_openai, echo).",
    )
    translate.add_argument(
        "-m",
        "--model",
        help="Provider-specific model or deployment identifier.",
    )
    translate.add_argument(
        "--max-input-tokens",
        type=int,
        help="Input token budget for each translation batch (default: 96000).",
    )
    translate.add_argument(
        "--review",
        action="store_true",
        help="Run an AI review of the new translations before writing the output.",
    )
    translate.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Allow overwriting the output file if it already exists.",
    )
    translate.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show detailed progress information.",
    )
    translate.add_argument(
        "--debug-provider",
        action="store_true",
        help="Log complete provider requests and responses for troubleshooting.",
    )
    return parser


def configure_logging(settings: Optional[TesseraConfig], verbose: bool) -> None:
    level_name = "DEBUG" if verbose else (settings.TESSERA_LOG_LEVEL if settings else "INFO")
    logging.basicConfig(
        level=getattr(logging, str(level_name).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def sanitise_language_for_filename(language: str) -> str:
    """Generate a filesystem-friendly suffix from a language descriptor."""

    collapsed = re.sub(r"\s+", "-", language.strip())
    ascii_only = collapsed.encode("ascii", "ignore").decode("ascii")
    cleaned = re.sub(r"[^A-Za-z0-9\-]+", "", ascii_only)
    return cleaned or "translated"


def derive_output_path(input_path: pathlib.Path, language: str) -> pathlib.Path:
    addition = sanitise_language_for_filename(language)
    return input_path.with_name(f"{input_path.stem}_{addition}{input_path.suffix}")


def execute_inspect(input_file: str, format_hint: Optional[str]) -> int:
    input_path = pathlib.Path(input_file).expanduser()
    try:
        data = input_path.read_bytes()
        handler = detect_handler(format_hint or detect_format(input_path, data))
        extraction = handler.extract(data)
    except OSError as exc:
        print(f"Could not read {input_path}: {exc}")
        return 1
    except TesseraError as exc:
        print(exc)
        return 1

    for key, value in sorted(extraction.metadata.items()):
        print(f"{key}: {value}")
    print(f"segments: {len(extraction.segments)}")
    for segment in extraction.segments:
        preview = segment.source_text.replace("\n", " ")
        if len(preview) > 60:
            preview = preview[:57] + "..."
        print(f"  [{segment.index}] {segment.status.value:<18} {preview}")
    return 0


def execute_translation(
    *,
    input_file: str,
    output_file: str | None,
    target_language: str,
    source_language: str | None,
    format_hint: str | None,
    overrides: Dict[str, Any],
    review: bool,
    force_overwrite: bool,
    verbose: bool = False,
) -> tuple[int, PipelineSummary | None, str | None]:
    """Execute a translation run and return the exit code, summary, and message."""

    input_path = pathlib.Path(input_file).expanduser().resolve()
    output_path = (
        pathlib.Path(output_file).expanduser().resolve()
        if output_file
        else derive_output_path(input_path, target_language)
    )

    try:
        validate_paths(input_path, output_path, force_overwrite=force_overwrite)
    except (FileNotFoundError, OverwriteRefusedError, TesseraError) as exc:
        return 1, None, str(exc)

    try:
        settings = load_settings(overrides=overrides)
    except TranslationProviderConfigurationError as exc:
        return 1, None, str(exc)

    configure_logging(settings, verbose)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    pipeline = DocumentPipeline(
        input_path=input_path,
        output_path=output_path,
        target_language=target_language,
        source_language=source_language,
        settings=settings,
        format_hint=format_hint,
        review=review,
    )

    try:
        summary = asyncio.run(pipeline.run())
    except UnsupportedFileTypeError as exc:
        return 1, None, str(exc)
    except TranslationProviderConfigurationError as exc:
        return 1, None, str(exc)
    except TesseraError as exc:
        return 1, None, str(exc)
    except KeyboardInterrupt:
        return 2, None, "Translation interrupted by user."
    except Exception as exc:  # pragma: no cover
        logging.getLogger(__name__).debug("Unexpected failure", exc_info=True)
        error_message = (
            f"{exc}\n"
            "An unexpected error occurred. Please rerun with --verbose for more details."
        )
        return 1, None, error_message

    return 0, summary, None


def print_summary(summary: PipelineSummary) -> None:
    """Output a friendly report once processing completes."""

    print("\nTranslation complete.")
    print(f"  Input file:      {summary.input_path}")
    print(f"  Output file:     {summary.output_path}")
    print(f"  Document type:   {summary.document_type}")
    print(
        "  Segments:        "
        f"{summary.translated_segments} translated / {summary.total_segments} total "
        f"({summary.failed_segments} failed, {summary.already_done} already done)"
    )
    print(f"  Batches:         {summary.total_batches}")
    if summary.reviewed_segments:
        print(f"  Reviewed:        {summary.reviewed_segments}")
    print(
        f"  Provider:        {summary.provider_name}"
        + (f" ({summary.model})" if summary.model else "")
    )
    if summary.source_language:
        print(f"  Source language: {summary.source_language}")
    print(f"  Target language: {summary.target_language}")
    print(f"  Elapsed time:    {summary.elapsed_seconds:.2f} seconds")
    if summary.total_errors:
        print("  Notes:")
        for message in summary.error_messages:
            print(f"    - {message}")


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.command == "inspect":
        configure_logging(None, verbose=False)
        return execute_inspect(args.input_file, args.format_hint)

    overrides: Dict[str, Any] = {
        "LLM_PROVIDER": args.provider,
        "TESSERA_MODEL": args.model,
        "TESSERA_MAX_INPUT_TOKENS": args.max_input_tokens,
        "TESSERA_PROVIDER_DEBUG": True if args.debug_provider else None,
    }
    exit_code, summary, message = execute_translation(
        input_file=args.input_file,
        output_file=args.output,
        target_language=args.target_language,
        source_language=args.source_language,
        format_hint=args.format_hint,
        overrides=overrides,
        review=args.review,
        force_overwrite=args.force,
        verbose=args.verbose or args.debug_provider,
    )

    if message:
        print(message)
    if summary:
        print_summary(summary)
    return exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

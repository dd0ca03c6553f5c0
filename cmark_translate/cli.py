"""Command line interface for cmark-translate."""

from __future__ import annotations

import argparse
import logging
import pathlib
import re
import sys
from typing import Iterable, List, Optional, Tuple

from .configuration import Settings, load_settings, validate_provider_settings
from .errors import (
    CmarkTranslateError,
    ConfigurationError,
    OverwriteRefusedError,
)
from .glossary import read_glossary
from .providers import DeepLGateway, TranslationGateway, build_gateway
from .translator import (
    STATUS_FAILED,
    STATUS_PARTIAL,
    TranslationRunner,
    TranslationSummary,
    plan_directory,
    validate_paths,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 2
EXIT_PARTIAL = 3

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cmark-translate",
        description=(
            "Translate CommonMark (.md) documents and spreadsheets (.xlsx) "
            "while preserving their structure."
        ),
    )
    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="YAML configuration file to load on top of the discovered ones.",
    )
    commands = parser.add_subparsers(dest="command")

    translate = commands.add_parser("translate", help="Translate a file or a directory.")
    translate.add_argument(
        "input",
        help="Path to the .md/.xlsx file, or a directory of them, to translate.",
    )
    translate.add_argument(
        "-o",
        "--output",
        help="Output path. Defaults to appending the target language code.",
    )
    translate.add_argument(
        "-f",
        "--from",
        dest="source_language",
        required=True,
        help="Source language (ISO-639-1 code).",
    )
    translate.add_argument(
        "-t",
        "--to",
        dest="target_language",
        required=True,
        help="Target language (ISO-639-1 code).",
    )
    translate.add_argument(
        "--formality",
        choices=["default", "more", "less", "prefer_more", "prefer_less"],
        help="Formality of the translation (DeepL only).",
    )
    translate.add_argument(
        "-p",
        "--provider",
        help="Translation provider identifier (deepl, openai or echo).",
    )
    translate.add_argument(
        "--force",
        action="store_true",
        help="Allow overwriting output files that already exist.",
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

    glossary = commands.add_parser("glossary", help="Manage DeepL glossaries.")
    glossary_commands = glossary.add_subparsers(dest="glossary_command", required=True)
    register = glossary_commands.add_parser("register", help="Register a glossary file.")
    register.add_argument("-n", "--name", required=True, help="Glossary name.")
    register.add_argument(
        "-f", "--from", dest="source_language", required=True, help="Source language."
    )
    register.add_argument(
        "-t", "--to", dest="target_language", required=True, help="Target language."
    )
    register.add_argument(
        "input",
        help="Glossary file (.tsv, .csv or .xlsx); the first row holds language codes.",
    )
    glossary_commands.add_parser("list", help="List registered glossaries.")
    delete = glossary_commands.add_parser("delete", help="Delete a registered glossary.")
    delete.add_argument("id", help="Glossary id.")

    commands.add_parser("usage", help="Show the characters used of the DeepL quota.")
    return parser


def configure_logging(*, verbose: bool = False, debug: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level)


def sanitise_language_for_filename(language: str) -> str:
    """Generate a filesystem-friendly suffix from a language code."""

    collapsed = re.sub(r"\s+", "-", language.strip())
    ascii_only = collapsed.encode("ascii", "ignore").decode("ascii")
    cleaned = re.sub(r"[^A-Za-z0-9\-]+", "", ascii_only)
    return cleaned.lower() or "translated"


def derive_output_path(input_path: pathlib.Path, language: str) -> pathlib.Path:
    addition = sanitise_language_for_filename(language)
    if input_path.is_dir():
        return input_path.with_name(f"{input_path.name}_{addition}")
    return input_path.with_name(f"{input_path.stem}_{addition}{input_path.suffix}")


def _plan(
    input_path: pathlib.Path,
    output_path: pathlib.Path,
    force_overwrite: bool,
) -> List[Tuple[pathlib.Path, pathlib.Path]]:
    if input_path.is_dir():
        pairs = plan_directory(input_path, output_path)
        if not pairs:
            raise CmarkTranslateError(f"No .md or .xlsx files found below {input_path}.")
        for source, destination in pairs:
            if destination.exists() and not force_overwrite:
                raise OverwriteRefusedError(
                    f"{destination} already exists. Rename it or use --force."
                )
        return pairs
    validate_paths(input_path, output_path, force_overwrite=force_overwrite)
    return [(input_path, output_path)]


def execute_translation(
    *,
    settings: Settings,
    input_file: str,
    output_file: str | None,
    target_language: str,
    source_language: str | None,
    force_overwrite: bool,
    gateway: TranslationGateway | None = None,
) -> tuple[int, List[TranslationSummary], str | None]:
    """Execute a translation run and return the exit code, summaries, and message."""

    input_path = pathlib.Path(input_file).expanduser().resolve()
    output_path = (
        pathlib.Path(output_file).expanduser().resolve()
        if output_file
        else derive_output_path(input_path, target_language)
    )

    try:
        pairs = _plan(input_path, output_path, force_overwrite)
    except FileNotFoundError as exc:
        return EXIT_FAILURE, [], str(exc)
    except CmarkTranslateError as exc:
        return EXIT_FAILURE, [], str(exc)

    try:
        active_gateway = gateway or build_gateway(settings)
    except ConfigurationError as exc:
        return EXIT_FAILURE, [], str(exc)

    summaries: List[TranslationSummary] = []
    try:
        for source, destination in pairs:
            runner = TranslationRunner(
                input_path=source,
                output_path=destination,
                settings=settings,
                gateway=active_gateway,
                target_language=target_language,
                source_language=source_language,
            )
            summaries.append(runner.run())
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED, summaries, "Translation interrupted by user."
    except CmarkTranslateError as exc:
        return EXIT_FAILURE, summaries, str(exc)
    finally:
        if gateway is None:
            active_gateway.close()

    statuses = {summary.status for summary in summaries}
    if STATUS_FAILED in statuses:
        return EXIT_FAILURE, summaries, None
    if STATUS_PARTIAL in statuses:
        return EXIT_PARTIAL, summaries, None
    return EXIT_OK, summaries, None


def print_summary(summary: TranslationSummary) -> None:
    """Output a friendly report once processing completes."""

    headline = {
        "success": "Translation complete.",
        "partial": "Translation complete, some text was kept in the source language.",
        "failed": "Translation failed.",
    }[summary.status]
    print(f"\n{headline}")
    print(f"  Input file:      {summary.input_path}")
    print(f"  Output file:     {summary.output_path}")
    print(f"  Document type:   {summary.document_type}")
    print(
        "  Text units:      "
        f"{summary.translated_units} translated / {summary.total_units} total "
        f"({summary.fallback_units} kept original, "
        f"{summary.passthrough_roots} without text)"
    )
    print(f"  Batches:         {summary.total_batches}")
    print(f"  Provider:        {summary.provider_name}")
    if summary.source_language:
        print(f"  Source language: {summary.source_language}")
    print(f"  Target language: {summary.target_language}")
    print(f"  Elapsed time:    {summary.elapsed_seconds:.2f} seconds")
    if summary.error:
        print(f"  Error:           {summary.error}")
    if summary.fallbacks:
        print("  Notes:")
        for record in summary.fallbacks:
            where = f" ({record.location})" if record.location else ""
            print(f"    - {record.message}{where}")


def open_account(settings: Settings) -> DeepLGateway:
    """DeepL client used by the glossary and usage commands."""

    validate_provider_settings(settings.model_copy(update={"PROVIDER": "deepl"}))
    return DeepLGateway(settings)


def run_glossary_command(args: argparse.Namespace, settings: Settings) -> int:
    if args.glossary_command == "register":
        entries = read_glossary(
            pathlib.Path(args.input).expanduser(),
            args.source_language,
            args.target_language,
        )
        if not entries:
            print("The glossary file contains no entries.")
            return EXIT_FAILURE
        account = open_account(settings)
        try:
            info = account.register_glossary(
                args.name, args.source_language, args.target_language, entries
            )
        finally:
            account.close()
        print(
            f"Total {getattr(info, 'entry_count', len(entries))} entries are registered "
            f"as ID = {info.glossary_id}"
        )
        return EXIT_OK

    account = open_account(settings)
    try:
        if args.glossary_command == "list":
            glossaries = account.list_glossaries()
            if not glossaries:
                print("No glossaries registered.")
            for info in glossaries:
                print(
                    f"{info.glossary_id}  {info.name}  "
                    f"{info.source_lang}->{info.target_lang}  "
                    f"{info.entry_count} entries"
                )
        else:
            account.delete_glossary(args.id)
            print(f"Deleted glossary {args.id}.")
    finally:
        account.close()
    return EXIT_OK


def run_usage_command(settings: Settings) -> int:
    account = open_account(settings)
    try:
        count, limit = account.usage()
    finally:
        account.close()
    if count is None:
        print("Character usage is not reported for this account.")
    elif limit:
        print(f"{count} characters used of {limit}.")
    else:
        print(f"{count} characters used.")
    return EXIT_OK


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    verbose = bool(getattr(args, "verbose", False))
    provider_debug = bool(getattr(args, "debug_provider", False))
    configure_logging(verbose=verbose, debug=provider_debug)

    overrides = {}
    if args.command == "translate":
        overrides = {"PROVIDER": args.provider, "FORMALITY": args.formality}
    try:
        settings = load_settings(
            config_path=pathlib.Path(args.config).expanduser() if args.config else None,
            overrides=overrides,
        )
    except ConfigurationError as exc:
        print(exc)
        return EXIT_FAILURE

    if settings.PROVIDER_DEBUG and not provider_debug:
        configure_logging(verbose=verbose, debug=True)

    if args.command == "translate":
        exit_code, summaries, message = execute_translation(
            settings=settings,
            input_file=args.input,
            output_file=args.output,
            target_language=args.target_language,
            source_language=args.source_language,
            force_overwrite=args.force,
        )
        if message:
            print(message)
        for summary in summaries:
            print_summary(summary)
        return exit_code

    try:
        if args.command == "glossary":
            return run_glossary_command(args, settings)
        return run_usage_command(settings)
    except CmarkTranslateError as exc:
        print(exc)
        return EXIT_FAILURE


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

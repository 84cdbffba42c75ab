"""Command-line entry point for the ePIC PID manager."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from epic_pid_manager.config import load_settings
from epic_pid_manager.pipeline import PipelineError, run_batch
from epic_pid_manager.services.citation import DataCiteResourceBuilder
from epic_pid_manager.services.mapping import FieldMapper, MappingError, load_mapping_table


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="epic-pid-manager",
        description="Register persistent identifiers for digitised documents.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log registry requests and responses.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    assign = commands.add_parser(
        "assign",
        help="Mint, update or remove the handles of one or more documents.",
    )
    assign.add_argument("documents", nargs="+", help="Paths of the document JSON files")

    datacite = commands.add_parser(
        "datacite",
        help="Build a DataCite resource XML from a source XML document.",
    )
    datacite.add_argument("source", help="Source XML document")
    datacite.add_argument("doi", help="DOI to record as the resource identifier")
    datacite.add_argument("--mapping", required=True, help="Field mapping file")
    datacite.add_argument(
        "-o",
        "--output",
        help="Where to write the resource XML (defaults to <source>.datacite.xml).",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "datacite":
        return _write_datacite(args)

    settings = load_settings()
    try:
        results = run_batch(args.documents, settings)
    except PipelineError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    for result in results:
        status = "OK" if result.success else "FAILED"
        print(f"[{status}] {result.document}")
        for message in result.messages:
            print(f"  {message.level.upper()}: {message.text}")
    return 0 if all(result.success for result in results) else 1


def _write_datacite(args: argparse.Namespace) -> int:
    source = Path(args.source)
    output = Path(args.output) if args.output else source.with_name(f"{source.stem}.datacite.xml")
    try:
        builder = DataCiteResourceBuilder(mapper=FieldMapper(load_mapping_table(args.mapping)))
        builder.write(args.doi, source, output)
    except MappingError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    print(output)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

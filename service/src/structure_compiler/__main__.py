import argparse
import logging
import sys
from pathlib import Path

from .output import output

parser = argparse.ArgumentParser(description="Compile a domain model into FHIR profiles, extensions and logical models")

subparsers = parser.add_subparsers(dest="cmd", required=True)

parser_compile = subparsers.add_parser("compile", help="compile a project and write the artifacts")
parser_compile.add_argument(
    "--project-dir",
    type=Path,
    required=True,
    help="The project directory containing config.json, the model and the base definitions",
)
parser_compile.add_argument(
    "--strict",
    action="store_true",
    help="Exit with status 1 when any diagnostic was reported",
)
parser_compile.add_argument(
    "--log-level",
    choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    default="INFO",
    help="The log level (default: INFO)",
)

args = parser.parse_args()
logging.basicConfig(level=args.log_level, format="%(levelname)s %(name)s: %(message)s")

if args.cmd == "compile":
    sys.exit(output(args.project_dir, args.strict))
else:
    parser.print_help()

"""
Command-line driver.

    python lift.py <input-directory> [output-directory]

Lifts every .rs file under the input directory into the output directory
(default ``output``), mirroring the directory layout.
"""

import argparse
import logging
import os
import sys

from lifter.driver import LiftConfig, lift_directory

USAGE = "%(prog)s <input-directory> [output-directory]"


def create_parser(prog: str) -> argparse.ArgumentParser:
    """Argument parser; bad usage is reported by ``main`` with exit code 1."""
    parser = argparse.ArgumentParser(
        prog=prog,
        usage=USAGE,
        description="Lift translated Rust: raw pointers to safe types, "
                    "counting while loops to ranges.",
    )
    parser.add_argument("input_dir", nargs="?", metavar="input-directory",
                        help="Directory containing the .rs files to lift")
    parser.add_argument("output_dir", nargs="?", metavar="output-directory",
                        help="Where lifted files are written (default: output)")
    return parser


def main(argv=None) -> int:
    argv = sys.argv if argv is None else argv
    parser = create_parser(argv[0])
    args, extra = parser.parse_known_args(argv[1:])
    if args.input_dir is None or extra:
        print("Usage: " + USAGE % {"prog": parser.prog}, file=sys.stderr)
        return 1

    if not os.path.isdir(args.input_dir):
        print("The specified input path is not a valid directory.", file=sys.stderr)
        return 1

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    config = LiftConfig()
    summary = lift_directory(args.input_dir, args.output_dir or config.output_dir, config)

    for rel, outcome in summary.items():
        for diagnostic in outcome.diagnostics:
            print(f"{rel}:{diagnostic}")
    failed = [rel for rel, outcome in summary.items() if outcome.status == "failed"]
    if failed:
        print(f"Processed {len(summary) - len(failed)} file(s); {len(failed)} failed.")
    else:
        print("Successfully processed all files in the directory.")
    return 0


if __name__ == "__main__":
    sys.exit(main())

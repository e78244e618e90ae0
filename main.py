#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Museum booking CLI entrypoint."""
import sys

from museum_booking.cli import build_parser, run_cli


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    if not getattr(args, "command", None):
        parser.print_help()
        return
    sys.exit(run_cli(args))


if __name__ == "__main__":
    main()

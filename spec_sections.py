#!/usr/bin/env python3

import argparse
import json
import sys

from typing import Any, Dict, List, Optional

from spec_parse import (InvalidSpecError, MacroTable, SectionBlock, Spec,
                        SpecError, UnknownFlags)

log = lambda s: None

def verify(args: argparse.Namespace) -> argparse.Namespace:
    if args.section and not args.section.startswith("%"):
        args.section = "%" + args.section

    args.macros = MacroTable.from_defines(args.define)
    args.unknown = UnknownFlags.REJECT if args.strict else UnknownFlags.IGNORE

    global log
    if args.verbose:
        log = lambda s: print(s, file=sys.stderr)
    else:
        log = lambda s: None

    return args

# None for a subpackage that can't be named (no Name: tag)
def package_of(s: Spec, b: SectionBlock) -> Optional[str]:
    try:
        return s.package_name(b)
    except InvalidSpecError as e:
        log(f"WARN: {e}")
        return None

def select(s: Spec, args: argparse.Namespace) -> List[SectionBlock]:
    blocks = s.sections
    if args.section:
        blocks = [b for b in blocks if b.name == args.section]
    if args.package:
        blocks = [b for b in blocks if package_of(s, b) == args.package]
    return blocks

def describe(s: Spec, b: SectionBlock) -> Dict[str, Any]:
    parsed = s.parse(b)
    return {
        "name": b.name,
        "package": package_of(s, b),
        "args": parsed.positional,
        "opts": parsed.options,
        "lines": list(b.lines),
    }

def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Split an RPM spec file into its sections.")
    parser.add_argument("-D", dest="define", action="append", default=[],
                        metavar="'NAME VALUE'",
                        help="define a macro for expansion (repeatable)")
    parser.add_argument("-j", dest="json", action="store_true",
                        help="print JSON (default: spec text)")
    parser.add_argument("-p", dest="package", default=None,
                        help="only sections of this package (default: all)")
    parser.add_argument("-r", dest="rev", default=None,
                        help="git revision to read from (default: on disk)")
    parser.add_argument("-s", dest="section", default=None,
                        help="only this section, e.g. %%files (default: all)")
    parser.add_argument("-v", dest="verbose", action="store_true",
                        help="increase verbosity (default: be quiet)")
    parser.add_argument("--strict", action="store_true",
                        help="reject unknown section flags (default: drop)")
    parser.add_argument("specfile", help="spec file to read")
    args = parser.parse_args(argv)

    try:
        args = verify(args)
        s = Spec(args.specfile, args.macros, args.rev, args.unknown)
        log(f"Read {len(s.sections)} sections from {args.specfile}...")

        blocks = select(s, args)
        log(f"{len(blocks)} sections selected...")

        if args.json:
            print(json.dumps([describe(s, b) for b in blocks], indent=2))
        else:
            # parse anyway so bad headers get reported
            for b in blocks:
                s.parse(b)
            print("\n\n".join(b.text for b in blocks if b.lines))
    except SpecError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    return 0

if __name__ == "__main__":
    exit(main())

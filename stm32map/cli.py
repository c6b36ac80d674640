#!/usr/bin/env python3
"""
Command line interface.

Usage: stm32map <command> [--mcu KEY] [--svd-dir DIR] [--out-dir DIR] [--verbose]

  regs      write svd_regs.py (--pool-number/--pool-size select a pool)
  rest      write svd_reg_index.py and svd_interrupts.py
  dump      write the patched device model as YAML
  audit     report fixes that no longer correct anything
  program   list the variant's patch program
  expand    list the token set of a schema instance
  check     check the ownership schema and its agreement with the device

Options override the STM32_MCU, OUT_DIR and STM32MAP_SVD_DIR environment
variables.
"""

import argparse
import sys
from pathlib import Path

from . import pipeline
from .errors import Stm32MapError
from .extractors import patches
from .periph import schema as periph_schema
from .tools import svd


def _add_common(parser, out_dir=False):
    parser.add_argument('--mcu', help='MCU variant key (default: $STM32_MCU)')
    parser.add_argument('--svd-dir', type=Path, help='Directory holding the SVD files (default: $STM32MAP_SVD_DIR or ./svd)')
    if out_dir:
        parser.add_argument('--out-dir', type=Path, help='Output directory (default: $OUT_DIR)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Report each step')


def build_parser():
    parser = argparse.ArgumentParser(
        prog='stm32map',
        description='Generate register, index and interrupt modules from patched STM32 SVD files.')
    subs = parser.add_subparsers(dest='command', required=True)

    sub = subs.add_parser('regs', help='Write svd_regs.py')
    _add_common(sub, out_dir=True)
    sub.add_argument('--pool-number', type=int, default=1, help='Pool to write, starting at 1')
    sub.add_argument('--pool-size', type=int, default=1, help='Number of pools')

    sub = subs.add_parser('rest', help='Write svd_reg_index.py and svd_interrupts.py')
    _add_common(sub, out_dir=True)

    sub = subs.add_parser('dump', help='Write the patched device model as YAML')
    _add_common(sub)
    sub.add_argument('output', type=Path, help='YAML file to write')

    sub = subs.add_parser('audit', help='Report fixes that no longer correct anything')
    _add_common(sub)

    sub = subs.add_parser('program', help="List the variant's patch program")
    sub.add_argument('--mcu', help='MCU variant key (default: $STM32_MCU)')

    sub = subs.add_parser('expand', help='List the token set of a schema instance')
    sub.add_argument('instance', help='Schema instance, e.g. GpioA')
    sub.add_argument('--mcu', help='MCU variant key (default: $STM32_MCU)')

    sub = subs.add_parser('check', help='Check the ownership schema against the patched device')
    _add_common(sub)

    return parser


def _cmd_regs(args):
    path = pipeline.generate_regs(args.out_dir, args.pool_number, args.pool_size,
                                  mcu=args.mcu, svd_dir=args.svd_dir, verbose=args.verbose)
    print(f"Wrote {path}")


def _cmd_rest(args):
    for path in pipeline.generate_rest(args.out_dir, mcu=args.mcu, svd_dir=args.svd_dir, verbose=args.verbose):
        print(f"Wrote {path}")


def _cmd_dump(args):
    mcu = pipeline.resolve_mcu(args.mcu)
    dev = pipeline.svd_deserialize(mcu, args.svd_dir, verbose=args.verbose)
    svd.dumpDevice(dev, args.output, header=f"# {mcu} after its patch program\n")
    print(f"Wrote {args.output}")


def _cmd_audit(args):
    mcu = pipeline.resolve_mcu(args.mcu)
    config = patches.load_config()
    path = pipeline.resolve_svd_dir(args.svd_dir) / patches.svd_file(mcu, config)
    program = patches.load_program(mcu, config)
    findings = program.audit(svd.parse(path))
    if not findings:
        print(f"AUDIT: All {len(program.fixes)} fixes of {program.name} are active")
        return 0
    print(f"AUDIT: Fix health report for {program.name}")
    print(f"{'='*60}")
    for category, title in (('stale', 'STALE (safe to remove)'),
                            ('partial', 'PARTIALLY STALE (review needed)'),
                            ('failed', 'FAILED')):
        entries = [(fix, details) for fix, cat, details in findings if cat == category]
        if not entries:
            continue
        print(title + ':')
        for fix, details in entries:
            print(f"  {fix}")
            for line in details:
                print(f"    {line}")
    counts = {c: sum(1 for f in findings if f[1] == c) for c in ('stale', 'partial', 'failed')}
    print(f"\nTotal: {counts['stale']} stale, {counts['partial']} partially stale, {counts['failed']} failed")
    return 1 if counts['failed'] else 0


def _cmd_program(args):
    mcu = pipeline.resolve_mcu(args.mcu)
    program = patches.load_program(mcu)
    print(f"{mcu}: program {program.name}, {len(program.fixes)} fixes, {len(program)} steps")
    for line in program.describe():
        print(line)


def _cmd_expand(args):
    mcu = pipeline.resolve_mcu(args.mcu)
    token_set = periph_schema.expand(periph_schema.load_schema(), args.instance, mcu)
    print(f"{token_set.instance} on {mcu}:")
    for r in token_set.registers:
        marker = ' shared' if r.shared else ''
        print(f"  {r.name:10} {r.peripheral}.{r.bound} @ {r.address:#010x} {r.access}{marker}")
        for f in r.fields:
            print(f"    {f.name:12} {f.bound:14} bits {f.offset}+{f.width} {f.kind}")


def _cmd_check(args):
    token_sets = pipeline.check_schema(args.mcu, args.svd_dir, verbose=args.verbose)
    print(f"Ownership schema checked: {len(token_sets)} instances")


COMMANDS = {
    'regs': _cmd_regs,
    'rest': _cmd_rest,
    'dump': _cmd_dump,
    'audit': _cmd_audit,
    'program': _cmd_program,
    'expand': _cmd_expand,
    'check': _cmd_check,
}


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        status = COMMANDS[args.command](args)
    except Stm32MapError as ex:
        print(f"Error: {ex}", file=sys.stderr)
        return 1
    return status or 0


if __name__ == '__main__':
    sys.exit(main())

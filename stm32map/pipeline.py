"""
Build entry points: select the variant, read its SVD, run its patch program,
and write the generated modules.

Defaults come from the environment the way a build script gets them:
  STM32_MCU          the variant key
  OUT_DIR            where the generated modules go
  STM32MAP_SVD_DIR   where the <variant>.svd files are (default: ./svd)

The variant is always resolved before any file is touched, so an unsupported
key fails without I/O. The first failure of any step propagates.
"""

import os
from pathlib import Path

from .errors import ConfigError
from .extractors import patches
from .generators import emit
from .periph import schema as periph_schema
from .tools import svd
from .variants import select, select_from_env

OUT_DIR_VAR = 'OUT_DIR'
SVD_DIR_VAR = 'STM32MAP_SVD_DIR'
DEFAULT_SVD_DIR = 'svd'


def resolve_mcu(mcu=None):
    return select_from_env() if mcu is None else select(mcu)


def resolve_svd_dir(svd_dir=None):
    return Path(svd_dir or os.environ.get(SVD_DIR_VAR) or DEFAULT_SVD_DIR)


def resolve_out_dir(out_dir=None):
    out_dir = out_dir or os.environ.get(OUT_DIR_VAR)
    if not out_dir:
        raise ConfigError(f"No output directory given and {OUT_DIR_VAR} is not set")
    return Path(out_dir)


def svd_deserialize(mcu=None, svd_dir=None, config:dict=None, verbose:bool=False):
    """Return the patched device model of a variant."""
    mcu = resolve_mcu(mcu)
    config = config or patches.load_config()
    path = resolve_svd_dir(svd_dir) / patches.svd_file(mcu, config)
    if verbose:
        print(f"Reading {path} for {mcu}")
    dev = svd.parse(path)
    program = patches.load_program(mcu, config)
    return program.apply(dev, verbose=verbose)


def schema_owned(mcu, schema=None):
    """The peripherals whose tokens only the ownership schema hands out."""
    mcu = select(mcu)
    schema = schema or periph_schema.load_schema()
    owned = set()
    for name in periph_schema.instances(schema, mcu):
        owned.update(periph_schema.expand(schema, name, mcu).peripherals)
    return sorted(owned)


def schema_shared(mcu, schema=None):
    """The registers schema instances share, by address, with the bits they own."""
    mcu = select(mcu)
    schema = schema or periph_schema.load_schema()
    shared = {}
    for name in periph_schema.instances(schema, mcu):
        for r in periph_schema.expand(schema, name, mcu).registers:
            if r.shared:
                bits = shared.setdefault(r.address, set())
                for f in r.fields:
                    bits.update(range(f.offset, f.offset + f.width))
    return {address: tuple(sorted(bits)) for address, bits in sorted(shared.items())}


def generate_regs(out_dir=None, pool_number:int=1, pool_size:int=1, mcu=None, svd_dir=None, verbose:bool=False):
    """Write svd_regs.py with pool pool_number of pool_size of the variant's peripherals."""
    mcu = resolve_mcu(mcu)
    out_dir = resolve_out_dir(out_dir)
    if pool_size < 1 or not 1 <= pool_number <= pool_size:
        raise ConfigError(f"Pool {pool_number} of {pool_size} doesn't exist")
    dev = svd_deserialize(mcu, svd_dir, verbose=verbose)
    return emit.generate_regs(dev, out_dir, pool_number, pool_size)


def generate_rest(out_dir=None, mcu=None, svd_dir=None, verbose:bool=False):
    """Write svd_reg_index.py and svd_interrupts.py."""
    mcu = resolve_mcu(mcu)
    out_dir = resolve_out_dir(out_dir)
    dev = svd_deserialize(mcu, svd_dir, verbose=verbose)
    return [
        emit.generate_index(dev, out_dir, schema_owned(mcu), schema_shared(mcu)),
        emit.generate_interrupts(dev, out_dir),
    ]


def check_schema(mcu=None, svd_dir=None, schema=None, verbose:bool=False):
    """Check the ownership schema on a variant, and that it agrees with the
    patched device. Returns the token sets checked."""
    mcu = resolve_mcu(mcu)
    schema = schema or periph_schema.load_schema()
    periph_schema.check_ownership(schema, mcu)
    dev = svd_deserialize(mcu, svd_dir, verbose=verbose)
    token_sets = []
    for name in periph_schema.instances(schema, mcu):
        token_set = periph_schema.expand(schema, name, mcu)
        periph_schema.check_against_device(token_set, dev)
        if verbose:
            print(f"  {name}: {len(token_set.registers)} registers agree with {dev['name']}")
        token_sets.append(token_set)
    return token_sets

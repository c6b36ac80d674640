"""
Variant patch programs: the ordered fixes applied to a vendor SVD model.

A program is data. `data/STM32.yaml` names, for every supported variant, the
SVD file and the program to run on it; a program is a list of `<file>.<fix>`
references into `data/fixes/<file>.yaml`, and each fix lists the patch
operations that correct one vendor defect.

Programs are applied atomically: the device passed in is never modified, and
the first failing step aborts the whole program with its context attached.
Every non-empty program is non-idempotent, since an operation that finds
nothing to correct raises StalePatchError.
"""

import copy
from collections import namedtuple
from pathlib import Path

from ..errors import ConfigError, PatchFailed, StalePatchError, Stm32MapError
from ..tools import transform
from ..tools.documents import load_yaml, validate
from ..variants import Mcu, select

DATA_DIR = Path(__file__).resolve().parent.parent / 'data'
CONFIG_FILE = DATA_DIR / 'STM32.yaml'
FIXES_DIR = DATA_DIR / 'fixes'


# ============================================================================
# Operation table
# ============================================================================

# op name -> (function, descriptor keys passed positionally after the device)
OPERATIONS = {
    'copy_register':    (transform.copy_register,    ('from', 'to', 'register')),
    'copy_field':       (transform.copy_field,       ('from', 'to', 'register', 'field')),
    'add_register':     (transform.add_register,     ('peripheral', 'register')),
    'add_field':        (transform.add_field,        ('peripheral', 'register', 'field')),
    'remove_register':  (transform.remove_register,  ('peripheral', 'register')),
    'remove_field':     (transform.remove_field,     ('peripheral', 'register', 'field')),
    'rename_register':  (transform.rename_register,  ('peripheral', 'register', 'name')),
    'rename_field':     (transform.rename_field,     ('peripheral', 'register', 'field', 'name')),
    'resize_register':  (transform.resize_register,  ('peripheral', 'register', 'size')),
    'resize_field':     (transform.resize_field,     ('peripheral', 'register', 'field', 'bitWidth')),
    'reposition_field': (transform.reposition_field, ('peripheral', 'register', 'field', 'bitOffset')),
    'set_access':       (transform.set_access,       ('peripheral', 'register', 'access', 'field')),
    'derive_peripheral': (transform.derive_peripheral, ('from', 'name', 'baseAddress')),
    'add_interrupt':    (transform.add_interrupt,    ('peripheral', 'name', 'value')),
}


def _describe_operation(op:str, args:dict):
    """Return a one-line human-readable summary of a patch operation."""
    if op in ('copy_register', 'copy_field'):
        what = '.'.join(n for n in (args['register'], args.get('field')) if n)
        return f"{op}: {args['from']}.{what} -> {args['to']}"
    elif op == 'add_register':
        reg = args['register']
        return f"{op}: {args['peripheral']}.{reg['name']} @ {reg['addressOffset']:#x}"
    elif op == 'add_field':
        fld = args['field']
        return f"{op}: {args['peripheral']}.{args['register']}.{fld['name']} @ bit {fld['bitOffset']}"
    elif op in ('remove_register', 'remove_field'):
        what = '.'.join(n for n in (args['register'], args.get('field')) if n)
        return f"{op}: {args['peripheral']}.{what}"
    elif op in ('rename_register', 'rename_field'):
        what = '.'.join(n for n in (args['register'], args.get('field')) if n)
        return f"{op}: {args['peripheral']}.{what} -> '{args['name']}'"
    elif op == 'resize_register':
        return f"{op}: {args['peripheral']}.{args['register']} -> {args['size']} bits"
    elif op == 'resize_field':
        return f"{op}: {args['peripheral']}.{args['register']}.{args['field']} -> {args['bitWidth']} bits"
    elif op == 'reposition_field':
        return f"{op}: {args['peripheral']}.{args['register']}.{args['field']} -> bit {args['bitOffset']}"
    elif op == 'set_access':
        what = '.'.join(n for n in (args['register'], args.get('field')) if n)
        return f"{op}: {args['peripheral']}.{what} -> {args['access']}"
    elif op == 'derive_peripheral':
        return f"{op}: {args['from']} -> {args['name']} @ {args['baseAddress']:#010x}"
    elif op == 'add_interrupt':
        return f"{op}: {args['peripheral']}.{args['name']} = {args['value']}"
    else:
        return f"{op}: {args}"


class PatchStep(namedtuple('PatchStep', 'fix op args')):
    """One patch operation of a fix: `fix` is the `<file>.<fix>` reference,
    `args` the descriptor without its `op` key."""

    __slots__ = ()

    def describe(self):
        return _describe_operation(self.op, self.args)

    def run(self, dev:dict):
        func, keys = OPERATIONS[self.op]
        func(dev, *(self.args.get(k) for k in keys))

    def __str__(self):
        return f"{self.fix}: {self.describe()}"


class PatchProgram:
    """An ordered, inspectable sequence of patch steps for one variant."""

    def __init__(self, name:str, steps=()):
        self.name = name
        self.steps = tuple(steps)

    def __len__(self):
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)

    def __repr__(self):
        return f"PatchProgram({self.name!r}, {len(self.steps)} steps)"

    @property
    def fixes(self):
        """The fix references in program order."""
        return tuple(dict.fromkeys(s.fix for s in self.steps))

    def describe(self):
        return [f"{i:3}  {step}" for i, step in enumerate(self.steps)]

    def apply(self, dev:dict, verbose:bool=False):
        """Run the program on a copy of dev and return the patched copy.

        The first failing step raises PatchFailed; dev is left untouched.
        """
        result = copy.deepcopy(dev)
        if verbose and self.steps:
            print(f"Applying patch program {self.name} ({len(self.steps)} steps)")
        for index, step in enumerate(self.steps):
            if verbose:
                print(f"  {step}")
            try:
                step.run(result)
            except (Stm32MapError, ValueError) as ex:
                raise PatchFailed(self.name, index, step, ex) from ex
        return result

    def audit(self, dev:dict):
        """Report fixes that no longer correct anything.

        Every fix is tried against the model patched by the fixes before it.
        Returns a list of findings (fix, category, details) where category is
          'stale'   every operation found nothing to correct (safe to remove),
          'partial' some operations are stale (review needed),
          'failed'  an operation failed for another reason.
        Fixes that apply cleanly are not reported.
        """
        findings = []
        current = copy.deepcopy(dev)
        for fix in self.fixes:
            steps = [s for s in self.steps if s.fix == fix]
            stale, failed = [], []
            for step in steps:
                try:
                    step.run(current)
                except StalePatchError as ex:
                    stale.append(f"{step.describe()}: {ex}")
                except (Stm32MapError, ValueError) as ex:
                    failed.append(f"{step.describe()}: {ex}")
            if failed:
                findings.append((fix, 'failed', failed + stale))
            elif len(stale) == len(steps):
                findings.append((fix, 'stale', stale))
            elif stale:
                findings.append((fix, 'partial', stale))
        return findings


# ============================================================================
# Config loading
# ============================================================================

_fixes_cache = {}


def load_fixes(file_name:str, fixes_dir:Path=FIXES_DIR):
    """Load and validate data/fixes/<file_name>.yaml; returns its fixes table."""
    path = Path(fixes_dir) / f"{file_name}.yaml"
    if path not in _fixes_cache:
        if not path.exists():
            raise ConfigError(f"Fix file {path} not found")
        doc = validate(load_yaml(path), 'fixes.schema.yaml', path)
        _fixes_cache[path] = doc['fixes']
    return _fixes_cache[path]


def resolve_fix(ref:str, fixes_dir:Path=FIXES_DIR):
    """Turn a `<file>.<fix>` reference into its list of PatchSteps."""
    file_name, _, fix_name = ref.partition('.')
    fixes = load_fixes(file_name, fixes_dir)
    if fix_name not in fixes:
        raise ConfigError(f"Fix '{fix_name}' not found in {Path(fixes_dir) / file_name}.yaml")
    steps = []
    for descriptor in fixes[fix_name]['operations']:
        args = {k: v for k, v in descriptor.items() if k != 'op'}
        steps.append(PatchStep(ref, descriptor['op'], args))
    return steps


def load_config(config_file:Path=CONFIG_FILE, fixes_dir:Path=FIXES_DIR):
    """Load the variant configuration and check that it is complete.

    Every Mcu must have exactly one entry, every program a variant refers to
    must exist, and every fix a program refers to must resolve.
    """
    config = validate(load_yaml(config_file), 'config.schema.yaml', config_file)

    keys = set(config['variants'])
    missing = sorted(m.value for m in Mcu if m.value not in keys)
    if missing:
        raise ConfigError(f"{config_file}: no entry for variant(s) {', '.join(missing)}")
    unknown = sorted(keys - {m.value for m in Mcu})
    if unknown:
        raise ConfigError(f"{config_file}: unsupported variant(s) {', '.join(unknown)}")

    for key, entry in config['variants'].items():
        program = entry.get('program')
        if program is not None and program not in config['programs']:
            raise ConfigError(f"{config_file}: variant {key} uses unknown program '{program}'")
    for name, refs in config['programs'].items():
        for ref in refs:
            try:
                resolve_fix(ref, fixes_dir)
            except ConfigError as ex:
                raise ConfigError(f"{config_file}: program {name}: {ex}") from ex
    return config


def svd_file(mcu, config:dict):
    """The SVD file name of a variant."""
    return config['variants'][select(mcu).value]['svd']


def load_program(mcu, config:dict=None, fixes_dir:Path=FIXES_DIR):
    """Build the patch program of a variant. Variants without one get the
    identity program."""
    mcu = select(mcu)
    if config is None:
        config = load_config(fixes_dir=fixes_dir)
    name = config['variants'][mcu.value].get('program')
    if name is None:
        return PatchProgram(mcu.value)
    steps = []
    for ref in config['programs'][name]:
        steps.extend(resolve_fix(ref, fixes_dir))
    return PatchProgram(name, steps)
